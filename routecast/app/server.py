import functools
import logging
import socket
import threading
from typing import List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .dispatch import DispatchQueue
from .models import PayloadError, parse_payload
from .runner import JobRunner

logger = logging.getLogger("routecast")

BEARER_PREFIX = "bearer "
LOG_BODY_LIMIT = 512


def truncate_for_log(text: str, limit: int = LOG_BODY_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "...(truncated)"


def is_authorized(header: Optional[str], secret: str) -> bool:
    if not secret:
        return True
    if not header or not header.lower().startswith(BEARER_PREFIX):
        return False
    return header[len(BEARER_PREFIX) :].strip() == secret


def normalize_path(path: str) -> str:
    return path.rstrip("/").lower() or "/"


def create_app(
    runner: Optional[JobRunner], dispatch: DispatchQueue, shared_secret: str = ""
) -> FastAPI:
    app = FastAPI(title="routecast", docs_url=None, redoc_url=None, openapi_url=None)

    if not shared_secret:
        logger.warning("No shared secret configured; control server accepts every request")

    @app.middleware("http")
    async def gate(request: Request, call_next):
        remote = request.client.host if request.client else "unknown"
        logger.info("%s %s from %s", request.method, request.url.path, remote)
        if not is_authorized(request.headers.get("authorization"), shared_secret):
            return JSONResponse({"error": "unauthorized"}, status_code=401)
        request.scope["path"] = normalize_path(request.scope["path"])
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Request %s %s failed", request.method, request.url.path)
            return JSONResponse({"error": "server-error"}, status_code=500)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        # wrong method on a known path is reported like an unknown path
        if exc.status_code in (404, 405):
            return JSONResponse({"error": "not-found"}, status_code=404)
        code = "server-error" if exc.status_code >= 500 else "bad-request"
        return JSONResponse({"error": code}, status_code=exc.status_code)

    @app.get("/health")
    def health():
        return {"status": runner.current_state if runner is not None else "unknown"}

    @app.get("/status")
    def status(job_id: Optional[str] = Query(default=None, alias="jobId")):
        if runner is None:
            return JSONResponse({"error": "job-runner-missing"}, status_code=503)
        return runner.get_status(job_id).to_json()

    @app.post("/render")
    async def render(request: Request):
        remote = request.client.host if request.client else "unknown"
        if runner is None:
            logger.warning("Render request from %s rejected: job runner missing", remote)
            return JSONResponse({"error": "job-runner-missing"}, status_code=503)

        body = await request.body()
        try:
            payload = parse_payload(body)
        except PayloadError as e:
            logger.warning(
                "Render request from %s rejected (%s): %s",
                remote,
                e.code,
                truncate_for_log(body.decode("utf-8", errors="replace")),
            )
            return JSONResponse(e.to_body(), status_code=400)

        logger.info(
            "Accepted render job %s with %d holds from %s", payload.job_id, len(payload.route), remote
        )
        dispatch.enqueue(functools.partial(runner.enqueue_job, payload))
        return JSONResponse({"jobId": payload.job_id, "status": "queued"}, status_code=202)

    return app


def bind_sockets(hosts: List[str], port: int) -> List[socket.socket]:
    """One listening socket per distinct address the hosts resolve to.

    Hosts that fail to resolve or bind are logged and skipped.
    """
    sockets: List[socket.socket] = []
    seen: set = set()
    for host in hosts:
        host = host.split("://", 1)[-1].strip().strip("/")
        if not host:
            continue
        try:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.warning("Control server could not resolve %s: %s", host, e)
            continue
        for family, socktype, proto, _, sockaddr in infos:
            key: Tuple = (family, sockaddr[0])
            if key in seen:
                continue
            sock = socket.socket(family, socktype, proto)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                if family == socket.AF_INET6:
                    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
                sock.bind(sockaddr)
            except OSError as e:
                logger.warning("Control server could not bind %s:%s: %s", sockaddr[0], port, e)
                sock.close()
                continue
            seen.add(key)
            sockets.append(sock)
    return sockets


class ControlServer:
    """Runs the FastAPI app under uvicorn on a background thread."""

    def __init__(self, app: FastAPI, hosts: List[str], port: int):
        self.app = app
        self.hosts = hosts
        self.port = port
        self.sockets: List[socket.socket] = []
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def started(self) -> bool:
        return self._server is not None and self._server.started

    def addresses(self) -> List[Tuple[str, int]]:
        return [s.getsockname()[:2] for s in self.sockets]

    def start(self) -> bool:
        if self._thread is not None:
            return True
        self.sockets = bind_sockets(self.hosts, self.port)
        if not self.sockets:
            logger.error("Control server failed to start: no address could be bound on port %s", self.port)
            return False
        config = uvicorn.Config(self.app, log_level="info", access_log=False)
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": self.sockets},
            name="control-server",
            daemon=True,
        )
        self._thread.start()
        logger.info("Control server listening on %s", self.addresses())
        return True

    def stop(self, timeout: float = 5.0) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
        for sock in self.sockets:
            try:
                sock.close()
            except OSError:
                pass
        self.sockets = []
        self._server = None
        self._thread = None
        logger.info("Control server stopped")
