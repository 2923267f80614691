from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from csrfblock.api.routes.forms import router as forms_router
from csrfblock.middleware.csrf import CSRFBlockMiddleware


def create_app(secret_key: str = "change-me", **csrf_options) -> FastAPI:
    app = FastAPI(title="CSRFBlock demo", version="0.1.0")
    app.include_router(forms_router)

    # Last added runs first: the session must exist before the CSRF check
    app.add_middleware(CSRFBlockMiddleware, **csrf_options)
    app.add_middleware(SessionMiddleware, secret_key=secret_key)
    return app


app = create_app(add_meta=True)
