"""Main entry point for serving the matching API."""
import uvicorn

from engine.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Environment: {settings.environment.value}")
    print(f"Database: {settings.db.url.split('@')[-1] if '@' in settings.db.url else settings.db.url}")
    print("-" * 50)

    uvicorn.run(
        "engine.api:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        reload_dirs=["engine", "ai", "config"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )
