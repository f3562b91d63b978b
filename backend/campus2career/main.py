import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from campus2career import __version__
from campus2career.api.ws_interview import dependencies as interview_dependencies
from campus2career.api.ws_interview import router as interview_ws_router

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

app = FastAPI(title="Campus2Career Interview Turns", version=__version__)
logger = logging.getLogger("campus2career.main")


def _get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_allowed_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(interview_ws_router)


@app.on_event("shutdown")
async def shutdown_handler():
    await interview_dependencies.aclose()
    logger.info("[SYSTEM] interview store closed")


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}
