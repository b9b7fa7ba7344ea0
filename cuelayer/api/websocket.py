import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from cuelayer.errors import BridgeSendError, MarkerValidationError
from cuelayer.models.marker import Marker
from cuelayer.services.cue_dispatcher import CueDispatcher, LyricTarget
from cuelayer.services.cue_mapper import auto_assign_lighting_cues, auto_assign_lyrics_cues
from cuelayer.services.protocol_encoder import coerce_midi_config
from cuelayer.services.voice import DEFAULT_PITCH, DEFAULT_RATE, count_in_phrase, format_cue_text
from cuelayer.store.session import CueSession

log = logging.getLogger(__name__)


class BroadcastAnnouncer:
    """Announcer that asks every connected device to speak the phrase."""

    def __init__(self, manager: "WebSocketManager"):
        self.manager = manager
        self._tasks: Set["asyncio.Task[None]"] = set()

    def announce(self, phrase: str, *, rate: float = DEFAULT_RATE, pitch: float = DEFAULT_PITCH) -> None:
        task = asyncio.ensure_future(
            self.manager.broadcast({"type": "announce", "phrase": phrase, "rate": rate, "pitch": pitch})
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class WebSocketManager:
    def __init__(self, session: CueSession, dispatcher: CueDispatcher, lyric_target: Optional[LyricTarget] = None):
        self.session = session
        self.dispatcher = dispatcher
        self.lyric_target = lyric_target or LyricTarget()
        self.announcer = BroadcastAnnouncer(self)
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        await self.send_initial_state(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def send_initial_state(self, websocket: WebSocket):
        await websocket.send_json({
            "type": "initial",
            "markers": [m.to_wire() for m in self.session.markers],
            "status": await self.session.get_status(),
        })

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                log.debug("Dropping message for a closed connection: %s", e)

    async def broadcast_status(self):
        await self.broadcast({"type": "status", "status": await self.session.get_status()})

    async def broadcast_markers(self):
        await self.broadcast({"type": "markers_updated", "markers": [m.to_wire() for m in self.session.markers]})

    async def _dispatch(self, websocket: WebSocket, send: Callable[..., Any], **kwargs: Any) -> bool:
        """Run one dispatcher send; a bridge failure becomes a toast, never an exception."""
        try:
            send(**kwargs)
        except BridgeSendError as e:
            log.warning("Cue delivery failed: %s", e)
            await websocket.send_json({"type": "cue_error", **e.to_dict()})
            return False
        return True

    async def _on_visual_cue(self, marker: Marker, when_sec: float) -> None:
        await self.broadcast({"type": "visual_cue", "marker": marker.to_wire(), "whenSec": when_sec})

    async def _on_count_in(self, marker: Marker) -> None:
        phrase = count_in_phrase(format_cue_text(marker, self.session.cue_text_mode))
        await self.broadcast({
            "type": "count_in",
            "markerId": marker.id,
            "phrase": phrase,
            "rate": self.session.config.voice_rate,
            "pitch": self.session.config.voice_pitch,
        })

    async def _arm(self, position_sec: float):
        await self.session.arm(
            position_sec,
            announcer=self.announcer,
            on_visual_cue=self._on_visual_cue,
            on_count_in=self._on_count_in,
        )

    async def _load(self, websocket: WebSocket, message: Dict[str, Any], result_type: str) -> bool:
        try:
            if message.get("type") == "load_song":
                await self.session.load_song(
                    message.get("songTitle"),
                    message.get("markers") or [],
                    bpm=message.get("bpm"),
                    song_index=int(message.get("songIndex") or 0),
                )
            else:
                await self.session.load_markers(message.get("markers") or [])
        except MarkerValidationError as e:
            await websocket.send_json({"type": result_type, "ok": False, "reason": e.code, "error": e.to_dict()})
            return False
        except ValidationError as e:
            await websocket.send_json({"type": result_type, "ok": False, "reason": "invalid_marker", "message": str(e)})
            return False
        await websocket.send_json({"type": result_type, "ok": True, "count": len(self.session.markers)})
        await self.broadcast_markers()
        return True

    async def _send_midi_clock(self, websocket: WebSocket, action: Optional[str], position: float, status: Dict[str, Any]):
        # start at the top of the song, continue mid-song; only a running clock is stopped
        if action == "play" and not status["isPlaying"]:
            clock_action = "continue" if position > 0 else "start"
        elif action in ("pause", "stop") and status["isPlaying"]:
            clock_action = "stop"
        else:
            return
        await self._dispatch(websocket, self.dispatcher.send_midi_clock, action=clock_action, bpm=status["bpm"])

    async def handle_transport(self, websocket: WebSocket, action: Optional[str], position_sec: Optional[float]):
        # Policy: the schedule never follows the transport by itself. Every
        # pause/stop cancels it and every play/seek re-arms from the new position.
        status = await self.session.get_status()
        position = float(position_sec) if position_sec is not None else status["positionSec"]
        await self._dispatch(
            websocket,
            self.dispatcher.send_transport,
            action=action,
            position_sec=position,
            bpm=status["bpm"],
        )
        await self._send_midi_clock(websocket, action, position, status)
        if action == "play":
            await self._arm(position)
        elif action in ("pause", "stop"):
            await self.session.cancel(0.0 if action == "stop" else position)
        elif action == "seek":
            was_playing = status["isPlaying"]
            await self.session.cancel(position)
            if was_playing:
                await self._arm(position)
        await self.broadcast_status()

    async def handle_message(self, websocket: WebSocket, data: str):
        try:
            message = json.loads(data)
            msg_type = message.get("type")

            if msg_type in ("load_song", "load_markers"):
                ok = await self._load(websocket, message, f"{msg_type}_result")
                if ok and msg_type == "load_song":
                    await self._dispatch(
                        websocket,
                        self.dispatcher.send_song_loaded,
                        song_title=self.session.song_title,
                        sections=self.session.markers,
                        lyric_target=self.lyric_target,
                    )
                await self.broadcast_status()

            elif msg_type == "set_bpm":
                await self.session.set_bpm(message.get("bpm"))
                await self.broadcast_status()

            elif msg_type == "tap":
                bpm = await self.session.tap(message.get("time"))
                await websocket.send_json({"type": "tap_result", "bpm": bpm})
                if bpm is not None:
                    await self.broadcast_status()

            elif msg_type == "set_cue_text_mode":
                ok = await self.session.set_cue_text_mode(message.get("mode"))
                await websocket.send_json({"type": "set_cue_text_mode_result", "ok": ok})

            elif msg_type == "set_midi_config":
                await self.session.set_midi_config(coerce_midi_config(message.get("midiConfig")))

            elif msg_type == "transport":
                await self.handle_transport(websocket, message.get("action"), message.get("positionSec"))

            elif msg_type == "section_cue":
                marker = await self.session.get_marker(message.get("markerId"))
                await self._dispatch(
                    websocket,
                    self.dispatcher.send_section_cue,
                    song_title=self.session.song_title,
                    marker=marker,
                    song_index=self.session.song_index,
                    midi_config=self.session.midi_config,
                    loop_active=self.session.loop_active,
                    propresenter_file_uri=message.get("propresenterFileUri"),
                    service_file_uri=message.get("serviceFileUri"),
                )
                if marker is not None:
                    markers = self.session.markers
                    await self._dispatch(
                        websocket,
                        self.dispatcher.send_cue_change,
                        song_title=self.session.song_title,
                        section_name=marker.name,
                        section_index=markers.index(marker) if marker in markers else 0,
                        total_sections=len(markers),
                        lyric_target=self.lyric_target,
                    )

            elif msg_type == "loop_state":
                active = bool(message.get("active", False))
                await self.session.set_loop_active(active)
                marker = await self.session.get_marker(message.get("markerId"))
                await self._dispatch(websocket, self.dispatcher.send_loop_state, active=active, marker=marker)
                await self.broadcast_status()

            elif msg_type == "pitch_shift":
                await self._dispatch(
                    websocket,
                    self.dispatcher.send_pitch_shift,
                    semitones=message.get("semitones") or 0,
                    mode=message.get("mode"),
                )

            elif msg_type == "auto_assign_cues":
                target = message.get("target", "lyrics")
                assign = auto_assign_lighting_cues if target == "lighting" else auto_assign_lyrics_cues
                assigned = assign(
                    self.session.markers,
                    start_at=int(message.get("startAt") or 1),
                    step=int(message.get("step") or 1),
                )
                await self.session.update_markers(assigned)
                await self.broadcast_markers()
                await self.broadcast_status()

            else:
                await websocket.send_json({"type": "error", "reason": "unknown_message", "message_type": msg_type})

        except Exception:
            log.exception("Error handling message")


async def websocket_endpoint(websocket: WebSocket, manager: WebSocketManager):
    await manager.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            await manager.handle_message(websocket, data)
    except WebSocketDisconnect:
        manager.disconnect(websocket)
