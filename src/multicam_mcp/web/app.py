"""FastAPI web application for the camera array dashboard."""

import asyncio
import threading
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

import cv2
import numpy as np
import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse, StreamingResponse

from multicam_mcp.devices import (
    CaptureCoordinator,
    DeviceNotFoundError,
    DeviceRegistry,
    DeviceSession,
    LiveFrame,
    RegistryError,
    SessionError,
    get_coordinator,
    get_registry,
    init_registry,
)
from multicam_mcp.drivers.config import get_factory
from multicam_mcp.drivers.protocol import FramingError
from multicam_mcp.observability import get_logger

logger = get_logger(__name__)

MJPEG_MEDIA_TYPE = "multipart/x-mixed-replace; boundary=frame"
#: Frames buffered per client; older frames are dropped for slow clients.
CLIENT_QUEUE_SIZE = 2
#: How long a stream waits for a frame before re-checking the session.
FRAME_WAIT_S = 1.0

DASHBOARD_HTML = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Multicam Control</title>
  <style>
    body { font-family: sans-serif; background: #111; color: #ddd; margin: 1em; }
    #grid { display: grid; grid-template-columns: repeat(2, 1fr); gap: 1em; }
    .cam { background: #222; padding: .5em; border-radius: 4px; }
    .cam img { width: 100%; background: #000; }
    button { margin-right: .5em; }
    pre { background: #222; padding: .5em; }
  </style>
</head>
<body>
  <h1>Multicam Control</h1>
  <p>
    <button onclick="connectAll()">Connect</button>
    <button onclick="capture('parallel')">Capture (parallel)</button>
    <button onclick="capture('sequential')">Capture (sequential)</button>
  </p>
  <div id="grid"></div>
  <h2>Last result</h2>
  <pre id="result">-</pre>
  <script>
    async function refresh() {
      const data = await (await fetch('/api/devices')).json();
      const grid = document.getElementById('grid');
      grid.innerHTML = '';
      for (const dev of data.devices) {
        const div = document.createElement('div');
        div.className = 'cam';
        const title = document.createElement('h3');
        title.textContent = dev.display_name + ' (' + dev.state + ')';
        const img = document.createElement('img');
        img.src = '/stream/' + encodeURIComponent(dev.identity);
        div.append(title, img);
        grid.appendChild(div);
      }
    }
    async function connectAll() {
      await fetch('/api/devices/connect', {method: 'POST'});
      refresh();
    }
    async function capture(mode) {
      const r = await fetch('/api/capture?mode=' + mode, {method: 'POST'});
      document.getElementById('result').textContent =
        JSON.stringify(await r.json(), null, 2);
    }
    refresh();
  </script>
</body>
</html>
"""


# =============================================================================
# Live view fan-out
# =============================================================================


class LiveBroadcaster:
    """Fans one session's live view out to any number of MJPEG clients.

    The first subscriber starts the session's live view and the last one
    to leave stops it. Frames arrive on the session's live-view thread
    and are handed to each client's event loop.
    """

    def __init__(self, session: DeviceSession, queue_size: int = CLIENT_QUEUE_SIZE):
        self.session = session
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[
            int, tuple[asyncio.AbstractEventLoop, asyncio.Queue[bytes]]
        ] = {}
        self._next_token = 0

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    async def subscribe(self) -> tuple[int, asyncio.Queue[bytes]]:
        """Register a client; starts the live view for the first one.

        Raises:
            SessionError / FramingError: Live view could not be started.
        """
        queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=self._queue_size)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = (asyncio.get_running_loop(), queue)
        try:
            # Returns the running handle when already streaming
            await asyncio.to_thread(self.session.start_live_view, self.publish)
        except (SessionError, FramingError):
            await self.unsubscribe(token)
            raise
        return token, queue

    async def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)
            last = not self._subscribers
        if last:
            await asyncio.to_thread(self.session.stop_live_view)

    def publish(self, frame: LiveFrame) -> None:
        with self._lock:
            targets = list(self._subscribers.values())
        for loop, queue in targets:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(_offer, queue, frame.data)


def _offer(queue: asyncio.Queue[bytes], data: bytes) -> None:
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(data)


def _mjpeg_part(jpeg: bytes) -> bytes:
    return b"--frame\r\nContent-Type: image/jpeg\r\n\r\n" + jpeg + b"\r\n"


def _error_frame(message: str) -> bytes:
    """Black 640x480 JPEG with ``message`` in red."""
    img = np.zeros((480, 640, 3), dtype=np.uint8)
    cv2.putText(
        img, message[:48], (20, 240), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 0, 255), 2
    )
    _, jpeg = cv2.imencode(".jpg", img)
    return jpeg.tobytes()


async def generate_stream(
    broadcaster: LiveBroadcaster,
    max_frames: int | None = None,
    frame_wait_s: float = FRAME_WAIT_S,
) -> AsyncGenerator[bytes, None]:
    """MJPEG multipart chunks from a session's live view.

    Ends after ``max_frames`` frames, when the session leaves CONNECTED,
    or when the client goes away. Start failures and disconnects are
    shown as a single error frame rather than breaking the response.
    """
    identity = broadcaster.session.identity
    try:
        token, queue = await broadcaster.subscribe()
    except (SessionError, FramingError) as e:
        logger.warning("Live view unavailable", identity=identity, error=str(e))
        yield _mjpeg_part(_error_frame(f"Live view unavailable: {e}"))
        return

    sent = 0
    try:
        while broadcaster.session.is_connected:
            try:
                data = await asyncio.wait_for(queue.get(), timeout=frame_wait_s)
            except TimeoutError:
                continue
            yield _mjpeg_part(data)
            sent += 1
            if max_frames is not None and sent >= max_frames:
                return
        yield _mjpeg_part(_error_frame(f"{identity} disconnected"))
    finally:
        await broadcaster.unsubscribe(token)
        logger.debug("Stream client left", identity=identity, frames=sent)


# =============================================================================
# Application
# =============================================================================


def _http_error(error: Exception) -> HTTPException:
    if isinstance(error, DeviceNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ValueError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, RegistryError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, RuntimeError):
        return HTTPException(status_code=503, detail=str(error))
    logger.exception("Dashboard request failed")
    return HTTPException(status_code=500, detail=str(error))


def create_app(
    registry: DeviceRegistry | None = None,
    coordinator: CaptureCoordinator | None = None,
) -> FastAPI:
    """Create the dashboard application.

    Args:
        registry: Registry to serve; None resolves ``get_registry()`` on
            every request so the app follows the MCP server's registry.
        coordinator: Coordinator for captures; None uses
            ``get_coordinator()``.

    Example:
        >>> app = create_app()
        >>> uvicorn.run(app, host="127.0.0.1", port=8080)
    """
    broadcasters: dict[str, LiveBroadcaster] = {}
    broadcasters_lock = threading.Lock()

    resolve_registry: Callable[[], DeviceRegistry] = (
        (lambda: registry) if registry is not None else get_registry
    )
    resolve_coordinator: Callable[[], CaptureCoordinator] = (
        (lambda: coordinator) if coordinator is not None else get_coordinator
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting dashboard")
        yield
        logger.info("Shutting down dashboard")
        with broadcasters_lock:
            active = list(broadcasters.values())
            broadcasters.clear()
        for broadcaster in active:
            await asyncio.to_thread(broadcaster.session.stop_live_view)

    app = FastAPI(
        title="Multicam Control",
        description="Web dashboard for the camera array",
        version="0.1.0",
        lifespan=lifespan,
    )

    def broadcaster_for(session: DeviceSession) -> LiveBroadcaster:
        with broadcasters_lock:
            current = broadcasters.get(session.identity)
            # A reconnected device gets a new session object
            if current is None or current.session is not session:
                current = LiveBroadcaster(session)
                broadcasters[session.identity] = current
            return current

    @app.get("/", response_class=HTMLResponse)
    async def dashboard() -> HTMLResponse:
        """Device grid with live previews and capture buttons."""
        return HTMLResponse(DASHBOARD_HTML)

    @app.get("/api/devices")
    async def api_devices() -> dict:
        """Snapshots of every registered session."""
        try:
            reg = resolve_registry()
            sessions = reg.snapshot()
        except Exception as e:
            raise _http_error(e) from e
        return {
            "count": len(sessions),
            "max_devices": reg.max_devices,
            "devices": [s.snapshot().to_dict() for s in sessions.values()],
        }

    @app.post("/api/devices/connect")
    async def api_connect() -> dict:
        """Connect every attached device up to the cap."""
        try:
            report = await asyncio.to_thread(resolve_registry().connect_all)
        except Exception as e:
            raise _http_error(e) from e
        return report.to_dict()

    @app.post("/api/capture")
    async def api_capture(
        mode: str | None = Query(None, description="parallel or sequential"),
    ) -> dict:
        """Capture on every connected device.

        Per-device failures are part of the 200 response; an unknown mode
        is a 400.
        """
        try:
            sessions = resolve_registry().snapshot()
            result = await asyncio.to_thread(
                resolve_coordinator().capture_all, sessions, mode
            )
        except Exception as e:
            raise _http_error(e) from e
        return result.to_dict()

    @app.get("/api/stats")
    async def api_stats() -> dict:
        """Capture statistics per device plus batch sync variance."""
        stats = resolve_coordinator().stats
        if stats is None:
            raise HTTPException(status_code=404, detail="Statistics are not enabled")
        return stats.to_dict()

    @app.get("/stream/{identity}")
    async def stream(
        identity: str,
        frames: int | None = Query(None, ge=1, description="Stop after N frames"),
    ) -> StreamingResponse:
        """MJPEG live preview of one device.

        Raises:
            HTTPException: 404 if the identity is not connected.
        """
        try:
            session = resolve_registry().get(identity)
        except Exception as e:
            raise _http_error(e) from e
        return StreamingResponse(
            generate_stream(broadcaster_for(session), max_frames=frames),
            media_type=MJPEG_MEDIA_TYPE,
        )

    return app


def main() -> None:
    """Run the dashboard standalone against the configured driver."""
    init_registry(get_factory().create_backend())
    uvicorn.run(create_app(), host="127.0.0.1", port=8080)


if __name__ == "__main__":  # pragma: no cover
    main()
