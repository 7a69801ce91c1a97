from fastapi import FastAPI

from dietcoach.api.auth import router as auth_router
from dietcoach.api.chat import router as chat_router
from dietcoach.db.session import create_tables

app = FastAPI(title="Diet Coach")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Diet Coach API", "status": "ok"}


app.include_router(auth_router)
app.include_router(chat_router)
