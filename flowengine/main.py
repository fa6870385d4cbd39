"""ASGI entry point for the workflow engine (``uvicorn flowengine.main:app``)."""

from .factory import create_app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from .config import get_config

    uvicorn_config = get_config().get_uvicorn_config()
    uvicorn_config.pop("reload")
    uvicorn.run(app, **uvicorn_config)
