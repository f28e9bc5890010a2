from fastapi import FastAPI

from scene_tagger.config import AppConfig, build_generator, load_config
from scene_tagger.pipeline import GenerationTrigger
from scene_tagger.routes import router
from scene_tagger.storage import SettingsStore


def create_app(config: AppConfig | None = None, generator=None) -> FastAPI:
    resolved = config or load_config()

    app = FastAPI(title="Scene Tagger")
    app.state.config = resolved
    app.state.store = SettingsStore(resolved.data_dir)
    app.state.generator = generator or build_generator(resolved)
    app.state.trigger = GenerationTrigger()
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
