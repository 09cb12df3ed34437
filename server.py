"""SPA static server entry point and connection lifecycle orchestration."""

from __future__ import annotations

import argparse
import errno
import json
import logging
import os
import selectors
import socket
import sys
import threading
import time
import zlib
from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, BinaryIO

from config import (
    HOST,
    IDLE_SWEEP_INTERVAL_SECS,
    LISTEN_BACKLOG,
    LOG_FORMAT,
    MAX_KEEPALIVE_REQUESTS,
    READ_CHUNK_SIZE,
    SELECT_TIMEOUT_SECS,
    SUPPORTED_ENCODINGS,
    WRITE_CHUNK_SIZE,
    ConfigurationError,
    ServerConfig,
    load_options_file,
    normalize_options,
)
from handlers.spa import serve_spa
from request import HTTPRequest, HTTPRequestParseError
from response import REASON_PHRASES, HTTPResponse, iter_chunked_encoded, prepare_response
from socket_handler import (
    HeaderTooLargeError,
    MalformedRequestError,
    PayloadTooLargeError,
    extract_http_request_message,
)

logger = logging.getLogger(__name__)

SERVED_METHODS = frozenset({"GET", "HEAD"})

_READ_ERROR_STATUS: dict[type[Exception], int] = {
    HeaderTooLargeError: 431,
    PayloadTooLargeError: 413,
    MalformedRequestError: 400,
}


class ListenerBindError(OSError):
    """Raised when the listener cannot bind its port (in use or privileged)."""


@dataclass(frozen=True, slots=True)
class Listener:
    """Handle to a running listener returned by ``SPAServer.start``."""

    host: str
    port: int
    thread: threading.Thread


@dataclass(slots=True)
class OutboundResponse:
    """Tracks incremental write state for a queued HTTP response."""

    response: HTTPResponse
    method: str
    path: str
    started_at: float
    connection_reused: bool
    close_after: bool
    pending_chunks: deque[memoryview] = field(default_factory=deque)
    stream_iter: Iterator[bytes] | None = None
    file_obj: BinaryIO | None = None
    file_remaining: int = 0
    file_offset: int = 0
    bytes_sent: int = 0

    @classmethod
    def from_http_response(
        cls,
        *,
        response: HTTPResponse,
        method: str,
        path: str,
        started_at: float,
        connection_reused: bool,
        close_after: bool,
    ) -> "OutboundResponse":
        prepared = prepare_response(response)
        outbound = cls(
            response=response,
            method=method,
            path=path,
            started_at=started_at,
            connection_reused=connection_reused,
            close_after=close_after,
        )
        outbound.pending_chunks.append(memoryview(prepared.head))
        if prepared.body:
            outbound.pending_chunks.append(memoryview(prepared.body))
        elif prepared.stream is not None:
            outbound.stream_iter = iter_chunked_encoded(prepared.stream)
        elif prepared.file_obj is not None:
            outbound.file_obj = prepared.file_obj
            outbound.file_remaining = prepared.file_size
        return outbound

    def close_resources(self) -> None:
        self.response.close()
        self.file_obj = None
        self.stream_iter = None


@dataclass(slots=True)
class ConnectionState:
    sock: socket.socket
    address: tuple[str, int]
    recv_buffer: bytearray = field(default_factory=bytearray)
    queued_responses: deque[OutboundResponse] = field(default_factory=deque)
    current_response: OutboundResponse | None = None
    requests_served: int = 0
    last_activity: float = field(default_factory=time.monotonic)
    closing: bool = False


class SPAServer:
    def __init__(
        self,
        config: ServerConfig,
        *,
        host: str = HOST,
        log_format: str = LOG_FORMAT,
    ) -> None:
        self.config = config
        self.host = host
        self.port = config.port
        self.log_format = log_format
        self.listener: Listener | None = None

        self._connections: dict[int, ConnectionState] = {}
        self._running = threading.Event()
        self._lifecycle_lock = threading.Lock()
        self._fatal_error: BaseException | None = None
        self._restart_pending = threading.Event()

    def start(self) -> Listener:
        """Bind the port and start the event loop on a background thread."""
        with self._lifecycle_lock:
            if self.listener is not None and self.listener.thread.is_alive():
                raise RuntimeError("SPA server is already running")

            server_socket = self._bind()
            self._fatal_error = None
            self._running.set()
            thread = threading.Thread(
                target=self._serve,
                args=(server_socket,),
                name=f"spa-server-{self.port}",
                daemon=True,
            )
            self.listener = Listener(host=self.host, port=self.port, thread=thread)
            thread.start()

        shown_host = "127.0.0.1" if self.host in {"", "::", "0.0.0.0"} else self.host
        logger.info("SPA server started on %s:%s", shown_host, self.port)
        return self.listener

    def serve_forever(self) -> None:
        """Start and block until the listener stops; re-raise fatal loop errors.

        A pending ``restart()`` keeps this call blocking across the restart.
        """
        listener = self.start()
        while True:
            listener.thread.join(timeout=0.5)
            if listener.thread.is_alive():
                continue
            if self._fatal_error is not None:
                raise self._fatal_error
            if self.listener is not None and self.listener is not listener:
                listener = self.listener
                continue
            if not self._restart_pending.is_set():
                return
            time.sleep(SELECT_TIMEOUT_SECS)

    def stop(self) -> threading.Thread:
        """Close the listener after the configured grace period.

        Returns the started thread doing the delayed close so callers can join it.
        """
        stopper = threading.Thread(target=self._delayed_stop, name="spa-server-stop", daemon=True)
        stopper.start()
        return stopper

    def restart(self) -> threading.Thread:
        """Stop, then start again once the delayed stop has completed."""
        self._restart_pending.set()
        stopper = self.stop()

        def _restart() -> None:
            try:
                stopper.join()
                self.start()
            except OSError as exc:
                self._fatal_error = exc
                logger.error("SPA server restart failed: %s", exc)
            finally:
                self._restart_pending.clear()

        restarter = threading.Thread(target=_restart, name="spa-server-restart", daemon=True)
        restarter.start()
        return restarter

    def _delayed_stop(self) -> None:
        time.sleep(self.config.grace_period_secs)
        with self._lifecycle_lock:
            listener = self.listener
            self._running.clear()
        if listener is not None and listener.thread is not threading.current_thread():
            listener.thread.join()

    def _bind(self) -> socket.socket:
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_socket.bind((self.host, self.config.port))
            server_socket.listen(LISTEN_BACKLOG)
            server_socket.setblocking(False)
        except OSError as exc:
            server_socket.close()
            bind = f"Port {self.config.port}"
            if exc.errno == errno.EACCES:
                raise ListenerBindError(exc.errno, f"{bind} requires elevated privileges") from exc
            if exc.errno == errno.EADDRINUSE:
                raise ListenerBindError(exc.errno, f"{bind} is already in use") from exc
            raise
        self.port = server_socket.getsockname()[1]
        return server_socket

    def _serve(self, server_socket: socket.socket) -> None:
        try:
            with server_socket, selectors.DefaultSelector() as selector:
                selector.register(server_socket, selectors.EVENT_READ, data=None)
                self._run_loop(server_socket, selector)
        except Exception as exc:
            self._fatal_error = exc
            logger.exception("SPA server listener failed")
        finally:
            self._running.clear()
            logger.info("SPA server stopped.")

    def _run_loop(self, server_socket: socket.socket, selector: selectors.BaseSelector) -> None:
        last_idle_sweep = time.monotonic()
        try:
            while self._running.is_set():
                for key, mask in selector.select(timeout=SELECT_TIMEOUT_SECS):
                    if key.data is None:
                        self._accept_clients(server_socket, selector)
                        continue

                    state: ConnectionState = key.data
                    if mask & selectors.EVENT_READ:
                        self._handle_read(state, selector)
                    if mask & selectors.EVENT_WRITE and state.sock.fileno() in self._connections:
                        self._handle_write(state, selector)

                now = time.monotonic()
                if now - last_idle_sweep >= IDLE_SWEEP_INTERVAL_SECS:
                    self._sweep_idle_connections(selector, now)
                    last_idle_sweep = now
        finally:
            for state in list(self._connections.values()):
                self._close_connection(state, selector)
            self._connections.clear()

    def _accept_clients(
        self,
        server_socket: socket.socket,
        selector: selectors.BaseSelector,
    ) -> None:
        while True:
            try:
                client_socket, address = server_socket.accept()
            except BlockingIOError:
                return
            except ConnectionError:
                continue

            client_socket.setblocking(False)
            state = ConnectionState(sock=client_socket, address=address)
            self._connections[client_socket.fileno()] = state
            selector.register(client_socket, selectors.EVENT_READ, data=state)

    def _handle_read(self, state: ConnectionState, selector: selectors.BaseSelector) -> None:
        try:
            chunk = state.sock.recv(READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError:
            self._close_connection(state, selector)
            return

        if not chunk:
            state.closing = True
            self._update_interest(state, selector)
            return

        state.last_activity = time.monotonic()
        if state.closing:
            return
        state.recv_buffer.extend(chunk)

        while not state.closing:
            started_at = time.perf_counter()
            try:
                extracted = extract_http_request_message(bytes(state.recv_buffer))
            except (HeaderTooLargeError, PayloadTooLargeError, MalformedRequestError) as exc:
                self._queue_error(state, _READ_ERROR_STATUS[type(exc)], started_at)
                break

            if extracted is None:
                break

            raw_request, leftover = extracted
            state.recv_buffer = bytearray(leftover)

            try:
                request = HTTPRequest.from_bytes(raw_request)
            except HTTPRequestParseError as exc:
                self._queue_error(state, exc.status_code, started_at)
                break

            state.requests_served += 1
            should_close = (
                (not request.keep_alive)
                or state.requests_served >= MAX_KEEPALIVE_REQUESTS
            )
            response = self._dispatch(request)
            if should_close:
                response.headers.setdefault("Connection", "close")
            else:
                response.headers.setdefault("Connection", "keep-alive")

            self._queue_response(
                state,
                response,
                method=request.method,
                path=request.raw_target,
                started_at=started_at,
                close_after=should_close,
            )

        self._update_interest(state, selector)

    def _queue_error(self, state: ConnectionState, status_code: int, started_at: float) -> None:
        response = HTTPResponse(
            status_code=status_code,
            headers={"Connection": "close"},
            body=REASON_PHRASES.get(status_code, "Bad Request"),
        )
        self._queue_response(
            state,
            response,
            method="-",
            path="-",
            started_at=started_at,
            close_after=True,
        )

    def _queue_response(
        self,
        state: ConnectionState,
        response: HTTPResponse,
        *,
        method: str,
        path: str,
        started_at: float,
        close_after: bool,
    ) -> None:
        try:
            outbound = OutboundResponse.from_http_response(
                response=response,
                method=method,
                path=path,
                started_at=started_at,
                connection_reused=state.requests_served > 1,
                close_after=close_after,
            )
        except OSError:
            response.close()
            logger.exception("Failed to prepare response for %s %s", method, path)
            outbound = OutboundResponse.from_http_response(
                response=HTTPResponse(
                    status_code=500,
                    headers={"Connection": "close"},
                    body="Internal Server Error",
                ),
                method=method,
                path=path,
                started_at=started_at,
                connection_reused=state.requests_served > 1,
                close_after=True,
            )
        state.queued_responses.append(outbound)
        if outbound.close_after:
            state.closing = True

    def _handle_write(self, state: ConnectionState, selector: selectors.BaseSelector) -> None:
        while True:
            if state.current_response is None:
                if not state.queued_responses:
                    break
                state.current_response = state.queued_responses.popleft()

            outbound = state.current_response

            if outbound.pending_chunks:
                view = outbound.pending_chunks[0]
                try:
                    sent = state.sock.send(view)
                except BlockingIOError:
                    return
                except OSError:
                    self._close_connection(state, selector)
                    return

                if sent <= 0:
                    return
                state.last_activity = time.monotonic()
                outbound.bytes_sent += sent
                if sent < len(view):
                    outbound.pending_chunks[0] = view[sent:]
                    return
                outbound.pending_chunks.popleft()
                continue

            if outbound.stream_iter is not None:
                try:
                    next_chunk = next(outbound.stream_iter)
                except StopIteration:
                    outbound.stream_iter = None
                    continue
                except (OSError, zlib.error) as exc:
                    self._abandon(state, outbound, selector, exc)
                    return
                outbound.pending_chunks.append(memoryview(next_chunk))
                continue

            if outbound.file_obj is not None and outbound.file_remaining > 0:
                if not self._write_file_chunk(state, outbound, outbound.file_obj, selector):
                    return
                continue

            outbound.close_resources()
            self._finalize_response(state, outbound, selector)
            if state.sock.fileno() not in self._connections:
                return
            state.current_response = None

        self._update_interest(state, selector)

    def _write_file_chunk(
        self,
        state: ConnectionState,
        outbound: OutboundResponse,
        file_obj: BinaryIO,
        selector: selectors.BaseSelector,
    ) -> bool:
        """Push the next slice of a raw file body; False when the write must wait."""
        count = min(WRITE_CHUNK_SIZE, outbound.file_remaining)

        if hasattr(os, "sendfile"):
            try:
                sent = os.sendfile(state.sock.fileno(), file_obj.fileno(), outbound.file_offset, count)
            except BlockingIOError:
                return False
            except OSError as exc:
                self._abandon(state, outbound, selector, exc)
                return False

            if not sent:
                self._abandon(state, outbound, selector, EOFError("file truncated while streaming"))
                return False
            state.last_activity = time.monotonic()
            outbound.bytes_sent += sent
            outbound.file_offset += sent
            outbound.file_remaining -= sent
            return True

        try:
            chunk = file_obj.read(count)
        except OSError as exc:
            self._abandon(state, outbound, selector, exc)
            return False
        if not chunk:
            self._abandon(state, outbound, selector, EOFError("file truncated while streaming"))
            return False
        outbound.pending_chunks.append(memoryview(chunk))
        outbound.file_remaining -= len(chunk)
        return True

    def _abandon(
        self,
        state: ConnectionState,
        outbound: OutboundResponse,
        selector: selectors.BaseSelector,
        exc: BaseException,
    ) -> None:
        logger.warning(
            "Stream error while sending %s to %s: %s",
            outbound.path,
            state.address[0],
            exc,
        )
        self._close_connection(state, selector)

    def _finalize_response(
        self,
        state: ConnectionState,
        outbound: OutboundResponse,
        selector: selectors.BaseSelector,
    ) -> None:
        self._log_access(state.address, outbound)
        if outbound.close_after:
            self._close_connection(state, selector)

    def _sweep_idle_connections(self, selector: selectors.BaseSelector, now: float) -> None:
        timeout_secs = self.config.timeout_secs
        if not timeout_secs:
            return
        for state in list(self._connections.values()):
            if now - state.last_activity <= timeout_secs:
                continue
            logger.debug("Closing idle connection from %s", state.address[0])
            self._close_connection(state, selector)

    def _update_interest(self, state: ConnectionState, selector: selectors.BaseSelector) -> None:
        fileno = state.sock.fileno()
        if fileno not in self._connections:
            return

        has_pending_write = bool(state.current_response is not None or state.queued_responses)
        if state.closing and not has_pending_write:
            self._close_connection(state, selector)
            return

        events = selectors.EVENT_WRITE if state.closing else selectors.EVENT_READ
        if has_pending_write:
            events |= selectors.EVENT_WRITE

        try:
            selector.modify(state.sock, events, data=state)
        except (KeyError, ValueError, OSError):
            self._close_connection(state, selector)

    def _close_connection(self, state: ConnectionState, selector: selectors.BaseSelector) -> None:
        fileno = state.sock.fileno()
        if fileno not in self._connections:
            return

        try:
            selector.unregister(state.sock)
        except (KeyError, ValueError):
            pass

        if state.current_response is not None:
            state.current_response.close_resources()
            state.current_response = None
        while state.queued_responses:
            state.queued_responses.popleft().close_resources()

        try:
            state.sock.close()
        except OSError:
            pass

        self._connections.pop(fileno, None)

    def _dispatch(self, request: HTTPRequest) -> HTTPResponse:
        if request.method not in SERVED_METHODS:
            return HTTPResponse(
                status_code=405,
                headers={"Allow": "GET, HEAD"},
                body="Method Not Allowed",
            )

        try:
            return serve_spa(request, self.config)
        except Exception:
            logger.exception("Unhandled error while serving %s", request.raw_target)
            return HTTPResponse(status_code=500, body="Internal Server Error")

    def _log_access(self, address: tuple[str, int], outbound: OutboundResponse) -> None:
        duration_ms = (time.perf_counter() - outbound.started_at) * 1000
        event: dict[str, Any] = {
            "client": address[0],
            "method": outbound.method,
            "path": outbound.path,
            "status": outbound.response.status_code,
            "bytes_out": outbound.bytes_sent,
            "duration_ms": round(duration_ms, 3),
            "connection_reused": outbound.connection_reused,
        }
        if self.log_format == "json":
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            "client=%s method=%s path=%s status=%s bytes_out=%s duration_ms=%.2f connection_reused=%s",
            event["client"],
            event["method"],
            event["path"],
            event["status"],
            event["bytes_out"],
            duration_ms,
            event["connection_reused"],
        )


def _parse_header(raw: str) -> tuple[str, str]:
    name, sep, value = raw.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected 'Name: value', got {raw!r}")
    return name.strip(), value.strip()


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve a single-page application's static files")
    parser.add_argument("--config", help="JSON file with server options")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int)
    parser.add_argument("--static-dir")
    parser.add_argument("--index-file")
    parser.add_argument("--timeout", type=int, help="idle connection timeout in ms, 0 disables")
    parser.add_argument("--accept-encoding", choices=SUPPORTED_ENCODINGS)
    parser.add_argument(
        "--header",
        action="append",
        type=_parse_header,
        default=[],
        metavar="'NAME: VALUE'",
        help="extra response header, repeatable",
    )
    parser.add_argument("--grace-period", type=int, help="stop/restart delay in ms")
    parser.add_argument("--debug", action="store_true", default=None)
    parser.add_argument("--log-format", choices=["plain", "json"], default=LOG_FORMAT)
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    """Merge the optional JSON config file with command-line overrides."""
    options = normalize_options(load_options_file(args.config)) if args.config else {}
    overrides = {
        "port": args.port,
        "static_dir": args.static_dir,
        "index_file": args.index_file,
        "timeout_millis": args.timeout,
        "accept_encoding": args.accept_encoding,
        "grace_period_millis": args.grace_period,
        "debug_logging": args.debug,
    }
    options.update({name: value for name, value in overrides.items() if value is not None})
    if args.header:
        headers = dict(options.get("extra_headers") or {})
        headers.update(args.header)
        options["extra_headers"] = headers
    return ServerConfig.from_mapping(options)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        config = build_config(args)
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("%s", exc)
        return 2

    logging.basicConfig(level=logging.DEBUG if config.debug_logging else logging.INFO)
    server = SPAServer(config, host=args.host, log_format=args.log_format)
    try:
        server.serve_forever()
    except ListenerBindError as exc:
        logger.error("%s", exc.strerror)
        return 1
    except KeyboardInterrupt:
        server.stop().join()
    return 0


if __name__ == "__main__":
    sys.exit(main())
