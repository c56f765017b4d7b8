"""
asgi.py -- Application assembly for IDecs.

This is the ONLY file that imports the api/ app together with the two browser
clients. api/main.py knows nothing about web/ or sso/, and neither client
imports the other. The clients share one thing from api/: the rate limiter
instance, because SlowAPIMiddleware keeps a single counter store.

Run with:  python main.py serve
           uvicorn asgi:app --reload
"""

from api.main import app
from sso.routes import router as sso_router
from web.routes import router as web_router

# The SSO router carries its own /sso prefix.
app.include_router(sso_router, tags=["SSO"])
app.include_router(web_router, tags=["Web UI"])
