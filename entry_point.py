import uvicorn

from tesouraria.config import get_settings
from tesouraria.main import app

if __name__ == "__main__":
    # Run the server
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
