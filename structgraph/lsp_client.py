"""Minimal Language Server Protocol client over a subprocess's stdio.

Only what extraction needs is implemented: the ``initialize`` handshake,
document open/close notifications and ``textDocument/documentSymbol``.
The client owns the subprocess pipes exclusively; callers only ever
``await`` request results.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .errors import StructgraphError

logger = logging.getLogger(__name__)

HEADER_ENCODING = "ascii"


class LspError(StructgraphError):
    """Base class for language-server transport failures."""


class LspStartError(LspError):
    """The server process could not be spawned or failed the handshake."""


class ChannelNotReadyError(LspError):
    """I/O was attempted on a channel that is not in the READY state."""


class LspTimeoutError(LspError):
    """The server did not answer a request in time."""


class LspConnectionClosed(LspError):
    """The server process exited or closed its stdout."""


class LspProtocolError(LspError):
    """A malformed frame was received."""


class LspResponseError(LspError):
    """The server answered a request with an ``error`` member."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message


class ChannelState(enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    STOPPED = "stopped"


@dataclass
class DocumentSymbol:
    """A named range reported by the server (lines are 1-indexed)."""

    name: str
    kind: int
    line: int
    end_line: int
    detail: str = ""
    container: Optional[str] = None
    children: List["DocumentSymbol"] = field(default_factory=list)


def command_exists(command: str) -> bool:
    """Return True if *command* resolves to an executable on PATH."""
    return shutil.which(command) is not None


def path_to_uri(path: Path) -> str:
    return path.resolve().as_uri()


# ------------------------------------------------------------------
# Framing
# ------------------------------------------------------------------

def encode_message(payload: Dict[str, Any]) -> bytes:
    """Frame *payload* as ``Content-Length: N\\r\\n\\r\\n`` + UTF-8 JSON."""
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode(HEADER_ENCODING)
    return header + body


async def read_message(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """Read one framed message; return None on a clean end of stream."""
    content_length: Optional[int] = None
    while True:
        raw = await reader.readline()
        if not raw:
            if content_length is None:
                return None
            raise LspConnectionClosed("stream ended inside a header block")
        line = raw.decode(HEADER_ENCODING, errors="replace").strip()
        if not line:
            if content_length is None:
                # Stray blank line between frames
                continue
            break
        name, _, value = line.partition(":")
        if name.strip().lower() == "content-length":
            try:
                content_length = int(value.strip())
            except ValueError as exc:
                raise LspProtocolError(f"invalid Content-Length header: {line!r}") from exc

    try:
        body = await reader.readexactly(content_length)
    except asyncio.IncompleteReadError as exc:
        raise LspConnectionClosed("stream ended inside a message body") from exc
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise LspProtocolError(f"undecodable message body: {exc}") from exc


def _parse_symbols(raw: Any, container: Optional[str] = None) -> List[DocumentSymbol]:
    """Accept both hierarchical DocumentSymbol[] and flat SymbolInformation[].

    Entries without a name are skipped; an entry whose fields have the wrong
    shape raises :class:`LspProtocolError` so callers can fall back.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise LspProtocolError(f"expected a list of symbols, got {type(raw).__name__}")
    symbols: List[DocumentSymbol] = []
    for item in raw:
        if not isinstance(item, dict) or "name" not in item:
            continue
        try:
            symbol = _parse_symbol(item, container)
        except (TypeError, ValueError, AttributeError) as exc:
            raise LspProtocolError(f"malformed symbol {item.get('name')!r}: {exc}") from exc
        symbol.children = _parse_symbols(item.get("children"), container=symbol.name)
        symbols.append(symbol)
    return symbols


def _parse_symbol(item: Dict[str, Any], container: Optional[str]) -> DocumentSymbol:
    if not isinstance(item["name"], str):
        raise TypeError("name is not a string")
    rng = item.get("range") or (item.get("location") or {}).get("range") or {}
    start = int(rng.get("start", {}).get("line", 0))
    end = int(rng.get("end", {}).get("line", start))
    return DocumentSymbol(
        name=item["name"],
        kind=int(item.get("kind", 0)),
        line=start + 1,
        end_line=end + 1,
        detail=item.get("detail") or "",
        container=item.get("containerName") or container,
    )


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------

class LanguageServerClient:
    """One language-server subprocess and its request/response bookkeeping."""

    def __init__(
        self,
        command: Sequence[str],
        root: Path,
        language_id: str = "plaintext",
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        if not command:
            raise ValueError("language server command must not be empty")
        self.command = list(command)
        self.root = root
        self.language_id = language_id
        self.timeout = timeout if timeout is not None else config.LSP_REQUEST_TIMEOUT
        self.env = env
        self.state = ChannelState.NOT_STARTED
        self.server_capabilities: Dict[str, Any] = {}

        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self.state is ChannelState.READY

    async def __aenter__(self) -> "LanguageServerClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # -- lifecycle -----------------------------------------------------

    async def start(self) -> None:
        if self.state is not ChannelState.NOT_STARTED:
            raise LspStartError(f"cannot start a channel in state {self.state.value}")
        self.state = ChannelState.STARTING
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.root),
                env={**os.environ, **self.env} if self.env else None,
            )
        except OSError as exc:
            self.state = ChannelState.STOPPED
            raise LspStartError(f"could not spawn {self.command[0]}: {exc}") from exc

        self._reader_task = asyncio.ensure_future(self._read_loop())
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())

        try:
            result = await self._request(
                "initialize",
                {
                    "processId": os.getpid(),
                    "rootUri": path_to_uri(self.root),
                    "rootPath": str(self.root),
                    "capabilities": {
                        "textDocument": {
                            "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
                        },
                    },
                    "workspaceFolders": [
                        {"uri": path_to_uri(self.root), "name": self.root.name},
                    ],
                },
            )
        except LspError as exc:
            await self.stop()
            raise LspStartError(f"{self.command[0]} failed to initialize: {exc}") from exc

        self.server_capabilities = (result or {}).get("capabilities", {})
        self.state = ChannelState.READY
        await self._notify("initialized", {})
        logger.info("Language server %s ready (root=%s)", self.command[0], self.root)

    async def stop(self) -> None:
        if self.state is ChannelState.STOPPED and self._process is None:
            return
        if self.state is ChannelState.READY:
            try:
                await self._request("shutdown", None, timeout=config.LSP_SHUTDOWN_GRACE)
                await self._notify("exit", None)
            except LspError as exc:
                logger.debug("Graceful shutdown of %s failed: %s", self.command[0], exc)
        self.state = ChannelState.STOPPED

        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=config.LSP_SHUTDOWN_GRACE)
            except asyncio.TimeoutError:
                logger.warning("Language server %s did not exit, killing it", self.command[0])
                process.kill()
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = self._stderr_task = None
        self._fail_pending(LspConnectionClosed("channel stopped"))

    # -- public surface ------------------------------------------------

    async def open_document(self, uri: str, text: str, language_id: Optional[str] = None) -> None:
        self._ensure_ready()
        await self._notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": uri,
                    "languageId": language_id or self.language_id,
                    "version": 1,
                    "text": text,
                },
            },
        )

    async def close_document(self, uri: str) -> None:
        self._ensure_ready()
        await self._notify("textDocument/didClose", {"textDocument": {"uri": uri}})

    async def document_symbols(self, uri: str) -> List[DocumentSymbol]:
        self._ensure_ready()
        result = await self._request("textDocument/documentSymbol", {"textDocument": {"uri": uri}})
        return _parse_symbols(result)

    # -- transport -----------------------------------------------------

    def _ensure_ready(self) -> None:
        if self.state is not ChannelState.READY:
            raise ChannelNotReadyError(f"channel is {self.state.value}")

    async def _send(self, payload: Dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise LspConnectionClosed("server process is not running")
        async with self._write_lock:
            try:
                process.stdin.write(encode_message(payload))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise LspConnectionClosed(f"write failed: {exc}") from exc

    async def _notify(self, method: str, params: Any) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def _request(self, method: str, params: Any, timeout: Optional[float] = None) -> Any:
        if self.state not in (ChannelState.STARTING, ChannelState.READY):
            raise ChannelNotReadyError(f"channel is {self.state.value}")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout=timeout or self.timeout)
        except asyncio.TimeoutError as exc:
            raise LspTimeoutError(f"{method} (id={request_id}) timed out") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        reader = self._process.stdout
        error: LspError = LspConnectionClosed("server closed its output")
        try:
            while True:
                message = await read_message(reader)
                if message is None:
                    break
                await self._dispatch(message)
        except LspError as exc:
            error = exc
            logger.warning("Language server %s stream error: %s", self.command[0], exc)
        finally:
            if self.state is not ChannelState.STOPPED:
                logger.debug("Language server %s exited", self.command[0])
                self.state = ChannelState.STOPPED
            self._fail_pending(error)

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        if "method" in message:
            if "id" in message:
                # Server-to-client request; an empty answer keeps the server moving.
                await self._send({"jsonrpc": "2.0", "id": message["id"], "result": None})
            else:
                logger.debug("%s -> %s", self.command[0], message["method"])
            return

        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            logger.debug("Dropping reply for unknown request id %r", message.get("id"))
            return
        if "error" in message and message["error"] is not None:
            err = message["error"]
            future.set_exception(LspResponseError(err.get("code", 0), err.get("message", "")))
        else:
            future.set_result(message.get("result"))

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        while True:
            line = await self._process.stderr.readline()
            if not line:
                return
            logger.debug("%s stderr: %s", self.command[0], line.decode("utf-8", errors="replace").rstrip())

    def _fail_pending(self, error: LspError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
