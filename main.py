from fastapi import FastAPI, HTTPException

from image_converter.api import create_app
from image_converter.settings import get_settings

settings = get_settings()

try:
    app = create_app(settings.config_path, require_enabled=settings.enable_local_api is not True)
except RuntimeError:
    app = FastAPI(title="Local Image Converter", version="0.1.0")

    @app.get("/")
    async def api_disabled() -> dict[str, str]:
        raise HTTPException(
            status_code=503,
            detail="Local API disabled. Enable by setting enable_local_api = true in config.toml",
        )
