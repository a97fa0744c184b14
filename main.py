from fastapi import FastAPI, HTTPException

from webp_optimizer.api import create_app
from webp_optimizer.settings import load_effective_config

try:
    app = create_app(config=load_effective_config(), require_enabled=True)
except RuntimeError:
    app = FastAPI(title="WebP Optimizer", version="0.1.0")

    @app.get("/")
    async def api_disabled() -> dict[str, str]:
        raise HTTPException(
            status_code=503,
            detail="Local API disabled. Enable by setting enable_local_api = true in config.toml or WEBPOPT_ENABLE_LOCAL_API=1",
        )
