import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from lexia.config import get_settings
from lexia.core.redis import build_change_bridge, close_redis, get_redis_client
from lexia.database import SessionLocal
from lexia.errors import LexiaError
from lexia.routers import conversations, relay
from lexia.services.change_feed import ChangeFeed
from lexia.services.conversation_store import ConversationStore

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    feed = ChangeFeed()
    app.state.store = ConversationStore(SessionLocal, feed)
    task = None
    client = await get_redis_client()
    if client is not None:
        bridge = build_change_bridge(client, feed)
        feed.attach_bridge(bridge)
        task = asyncio.create_task(bridge.listen())
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await close_redis()


app = FastAPI(title="LexIA API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LexiaError)
async def lexia_error_handler(request: Request, exc: LexiaError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = errors[0].get("msg", "") if errors else ""
    message = f"Solicitud inválida. ({detail})" if detail else "Solicitud inválida."
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": message})


app.include_router(relay.router)
app.include_router(conversations.router)


@app.get("/")
def root():
    return {"message": "LexIA API", "docs": "/docs"}
