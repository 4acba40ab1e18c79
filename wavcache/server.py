#!/usr/bin/env python3
"""
aiohttp front end serving recordings and their cached derivatives.

Endpoints:
  GET /                -> HTML listing of the data directory
  GET /<path>/         -> HTML listing of a sub-directory
  GET /<path>.json     -> INFO list metadata of <path>.wav (cached)
  GET /<path>.png      -> Spectrogram of <path>.wav rendered by sox (cached)
  GET /<path>.wav      -> The recording itself
  GET /healthz         -> "ok"

Derived artifacts are keyed on the request path plus its raw query string, so
differently parameterised requests are cached side by side.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable

from aiohttp import web

from . import webui
from .artifacts import ArtifactService
from .cache_keys import ResourceIdentity, ResourceKind
from .config import Settings, reload_cfg
from .errors import WavCacheError

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

SERVICE_KEY: web.AppKey[ArtifactService] = web.AppKey("artifact_service", ArtifactService)
EXECUTOR_KEY: web.AppKey[ThreadPoolExecutor] = web.AppKey("derivation_executor", ThreadPoolExecutor)

CONTENT_TYPES = {
    ResourceKind.IMAGE: "image/png",
    ResourceKind.METADATA: "application/json",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def _error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except WavCacheError as exc:
        logging.getLogger("wavcache.server").warning(
            "request failed url=%s error=%s: %s", request.path, type(exc).__name__, exc
        )
        return web.Response(status=500, text=f"{exc}\n")


def _identity(request: web.Request, kind: ResourceKind) -> ResourceIdentity:
    return ResourceIdentity(
        logical_path=request.match_info.get("path", ""),
        query=request.rel_url.raw_query_string,
        kind=kind,
    )


async def _run_blocking(request: web.Request, func: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(request.app[EXECUTOR_KEY], func, *args)


def build_app(settings: Settings, *, service: ArtifactService | None = None) -> web.Application:
    log = logging.getLogger("wavcache.server")
    artifact_service = service or ArtifactService(settings)

    app = web.Application(middlewares=[_error_middleware])
    app[SERVICE_KEY] = artifact_service
    app[EXECUTOR_KEY] = ThreadPoolExecutor(
        max_workers=settings.executor_workers,
        thread_name_prefix="wavcache_derive",
    )

    async def _shutdown_executor(app: web.Application) -> None:
        app[EXECUTOR_KEY].shutdown(wait=False, cancel_futures=True)

    app.on_cleanup.append(_shutdown_executor)

    def _log_request(handler_name: str, identity: ResourceIdentity) -> None:
        try:
            source = artifact_service.source_path(identity.logical_path)
        except WavCacheError:
            source = None
        log.info(
            "%s url=%s source=%s cache_file=%s",
            handler_name,
            identity.logical_path,
            source,
            artifact_service.cache_path(identity),
        )

    async def send_derived(request: web.Request, kind: ResourceKind) -> web.Response:
        identity = _identity(request, kind)
        _log_request(f"send_{kind.extension}", identity)
        body = await _run_blocking(request, artifact_service.derive, identity)
        return web.Response(body=body, content_type=CONTENT_TYPES[kind])

    async def send_json(request: web.Request) -> web.Response:
        return await send_derived(request, ResourceKind.METADATA)

    async def send_png(request: web.Request) -> web.Response:
        return await send_derived(request, ResourceKind.IMAGE)

    async def send_wav(request: web.Request) -> web.StreamResponse:
        identity = _identity(request, ResourceKind.AUDIO)
        _log_request("send_wav", identity)
        path = await _run_blocking(request, artifact_service.audio_path, identity)
        return web.FileResponse(path)

    async def send_list(request: web.Request) -> web.Response:
        logical_dir = request.match_info.get("path", "")
        log.info("send_list url=%s", request.path)
        entries = await _run_blocking(request, artifact_service.list_directory, logical_dir)
        html = webui.render_listing(logical_dir, entries)
        return web.Response(text=html, content_type="text/html")

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    # Routes
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/", send_list)
    app.router.add_get("/{path:.*}.json", send_json)
    app.router.add_get("/{path:.*}.png", send_png)
    app.router.add_get("/{path:.*}.wav", send_wav)
    app.router.add_get("/{path:.*}/", send_list)
    return app


class ServerHandle:
    """Handle returned by start_server_in_thread(). Call stop() to cleanly shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    @property
    def port(self) -> int | None:
        for address in self.runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    def stop(self, timeout: float = 5.0) -> None:
        log = logging.getLogger("wavcache.server")
        log.info("Stopping wavcache server ...")
        if self.loop.is_running():
            # The server thread cleans up the runner once its loop stops.
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("wavcache server stopped")


def start_server_in_thread(
    settings: Settings,
    host: str | None = None,
    port: int | None = None,
    *,
    access_log: bool = False,
) -> ServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    log = logging.getLogger("wavcache.server")
    bind_host = host if host is not None else settings.listen_host
    bind_port = port if port is not None else settings.listen_port

    loop = asyncio.new_event_loop()
    started = threading.Event()
    box: dict[str, Any] = {}

    def _run() -> None:
        asyncio.set_event_loop(loop)
        try:
            app = build_app(settings)
            if access_log:
                runner = web.AppRunner(app)
            else:
                runner = web.AppRunner(app, access_log=None)
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, bind_host, bind_port)
            loop.run_until_complete(site.start())
        except Exception as exc:
            box["error"] = exc
            started.set()
            loop.close()
            return
        box["runner"] = runner
        box["app"] = app
        log.info("wavcache server started on %s:%s (data=%s cache=%s)", bind_host, bind_port, settings.data_dir, settings.cache_dir)
        started.set()
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception as e:
                log.warning("Error during final runner cleanup: %r", e)
            loop.close()

    t = threading.Thread(target=_run, name="wavcache_server", daemon=True)
    t.start()
    started.wait()

    if "error" in box:
        t.join()
        raise RuntimeError(f"Unable to start wavcache server: {box['error']}") from box["error"]

    return ServerHandle(t, loop, box["runner"], box["app"])


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Serve WAV recordings with cached spectrograms and metadata.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--data-dir", help="Override the recordings directory.")
    parser.add_argument("--cache-dir", help="Override the cache directory.")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", help="Python logging level (defaults to config).")
    args = parser.parse_args(argv)

    settings = Settings.from_cfg(reload_cfg())
    if args.data_dir:
        settings = replace(settings, data_dir=Path(args.data_dir).expanduser())
    if args.cache_dir:
        settings = replace(settings, cache_dir=Path(args.cache_dir).expanduser())

    level_name = (args.log_level or settings.log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    log = logging.getLogger("wavcache.server")

    try:
        handle = start_server_in_thread(settings, args.host, args.port, access_log=args.access_log)
    except RuntimeError as exc:
        log.error("%s", exc)
        return 1

    try:
        while handle.thread.is_alive():
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
