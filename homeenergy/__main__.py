import uvicorn

from homeenergy.config import settings

if __name__ == "__main__":
    uvicorn.run("homeenergy.main:app", host=settings.http_host, port=settings.http_port)
