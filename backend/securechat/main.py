from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .api.conversations import router as conversations_router
from .api.messages import router as messages_router
from .api.users import router as users_router
from .auth import router as auth_router
from .db import check_connection, create_indexes
from .errors import ChatError
from .logger import setup_logging
from .realtime import router as ws_router

setup_logging()

app = FastAPI(
    title="SecureChat Backend",
    version="1.0.0",
    description="Conversation and message store for end-to-end encrypted chat",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.on_event("startup")
def _startup():
    if check_connection():
        create_indexes()


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(auth_router)
app.include_router(users_router)
app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(ws_router)


def run():
    import uvicorn

    uvicorn.run("securechat.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
