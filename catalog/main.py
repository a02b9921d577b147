import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from catalog.auth import SessionAccessService
from catalog.config import Settings, get_settings
from catalog.database import create_db_and_tables, make_engine
from catalog.exceptions import CatalogError
from catalog.routes import router
from catalog.service import CatalogStore
from catalog.storage import ContentStorage

logger = logging.getLogger(__name__)


async def catalog_error_handler(request: Request, exc: CatalogError) -> JSONResponse:
    if exc.status_code == 404:
        logger.info("%s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "message": exc.message})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    engine = make_engine(settings.database_url)
    create_db_and_tables(engine)

    app = FastAPI(title="Python Catalog Store")
    app.state.settings = settings
    app.state.store = CatalogStore(engine, ContentStorage(settings.storage_root))
    app.state.access = SessionAccessService(settings, engine)
    app.add_exception_handler(CatalogError, catalog_error_handler)

    @app.get("/health", include_in_schema=False)
    def health():
        return {"status": "ok"}

    app.include_router(router)
    return app


if __name__ == "__main__":
    uvicorn.run("catalog.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
