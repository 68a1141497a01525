import uvicorn
from oauth_bridge.core.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "oauth_bridge.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
