from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from cuelayer import __version__
from cuelayer.api.websocket import WebSocketManager, websocket_endpoint
from cuelayer.config import CueConfig
from cuelayer.custom_logging import setup_logging
from cuelayer.services.bridge import make_bridge_transport
from cuelayer.services.cue_dispatcher import CueDispatcher
from cuelayer.store.session import CueSession

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: CueConfig = getattr(app.state, "config", None) or CueConfig.from_env()
    setup_logging(config.log_level, config.log_file)

    bridge = make_bridge_transport(config)
    await bridge.start()
    session = CueSession(config)
    dispatcher = CueDispatcher(bridge)
    ws_manager = WebSocketManager(session, dispatcher)
    log.info("Cue bridge target %s:%s (%s)", config.bridge_host, config.bridge_port, config.bridge_transport)

    app.state.config = config
    app.state.bridge = bridge
    app.state.session = session
    app.state.dispatcher = dispatcher
    app.state.ws_manager = ws_manager

    yield

    # Shutdown: nothing may fire once the socket is gone.
    await session.cancel()
    await bridge.aclose()


app = FastAPI(lifespan=lifespan, title="Cue Layer")

# CORS for the performer UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": "Cue Layer", "version": __version__}


@app.get("/health")
async def health():
    return {"ok": True, "status": await app.state.session.get_status()}


@app.websocket("/ws")
async def websocket_route(websocket: WebSocket):
    await websocket_endpoint(websocket, app.state.ws_manager)


if __name__ == "__main__":
    import uvicorn

    settings = CueConfig.from_env()
    uvicorn.run(app, host=settings.server_host, port=settings.server_port)
