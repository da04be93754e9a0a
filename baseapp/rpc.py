import json
import logging
import os
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional

from .app import Application
from .errors import AppError
from .types import ConsensusParams, ValidatorUpdate, b64, unb64

logger = logging.getLogger(__name__)

RPC_TOKEN = os.getenv("BASEAPP_RPC_TOKEN")
MAX_RPC_SIZE = int(os.getenv("BASEAPP_RPC_MAX", "4194304"))
RPC_HOST = os.getenv("BASEAPP_RPC_HOST", "127.0.0.1")
RPC_PORT = int(os.getenv("BASEAPP_RPC_PORT", "26658"))


def _bytes_param(params: Dict[str, Any], name: str, default: Optional[bytes] = None) -> bytes:
    value = params.get(name)
    if value is None:
        if default is None:
            raise ValueError(f"{name} required")
        return default
    if not isinstance(value, str):
        raise ValueError(f"{name} must be base64 text")
    try:
        return unb64(value)
    except ValueError as exc:
        raise ValueError(f"{name} is not valid base64") from exc


def _txs_param(params: Dict[str, Any]) -> List[bytes]:
    raw = params.get("txs", [])
    if not isinstance(raw, list):
        raise ValueError("txs must be a list")
    return [_bytes_param({"tx": t}, "tx") for t in raw]


def _int_param(params: Dict[str, Any], name: str, default: Optional[int] = None) -> int:
    value = params.get(name, default)
    if value is None:
        raise ValueError(f"{name} required")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer")
    return value


def dispatch(app: Application, method: str, params: Dict[str, Any]) -> Any:
    """Run one protocol request against ``app`` and return a JSON-safe result."""
    if method == "echo":
        return {"message": str(params.get("message", ""))}
    if method == "flush":
        return {}
    if method == "info":
        return app.info().to_dict()
    if method == "init_chain":
        validators = [ValidatorUpdate.from_dict(v) for v in params.get("validators", [])]
        raw_params = params.get("consensus_params")
        consensus_params = ConsensusParams.from_dict(raw_params) if raw_params else None
        result = app.init_chain(
            chain_id=str(params.get("chain_id", "")),
            initial_height=_int_param(params, "initial_height", 1),
            validators=validators,
            app_state_bytes=_bytes_param(params, "app_state_bytes", b""),
            consensus_params=consensus_params,
        )
        return result.to_dict()
    if method == "check_tx":
        tx = _bytes_param(params, "tx")
        return app.check_tx(tx, recheck=bool(params.get("recheck", False))).to_dict()
    if method == "prepare_proposal":
        txs = app.prepare_proposal(_txs_param(params), _int_param(params, "max_tx_bytes"))
        return {"txs": [b64(tx) for tx in txs]}
    if method == "process_proposal":
        max_tx_bytes = params.get("max_tx_bytes")
        if max_tx_bytes is not None:
            max_tx_bytes = _int_param(params, "max_tx_bytes")
        status = app.process_proposal(_txs_param(params), max_tx_bytes)
        return {"status": status.value}
    if method == "finalize_block":
        return app.finalize_block(_int_param(params, "height"), _txs_param(params)).to_dict()
    if method == "commit":
        return app.commit().to_dict()
    if method == "query":
        result = app.query(
            str(params.get("path", "")),
            _bytes_param(params, "data", b""),
            _int_param(params, "height", 0),
        )
        return result.to_dict()
    if method == "extend_vote":
        ext = app.extend_vote(_int_param(params, "height"), _bytes_param(params, "hash", b""))
        return {"vote_extension": b64(ext)}
    if method == "verify_vote_extension":
        status = app.verify_vote_extension(
            _int_param(params, "height"),
            _bytes_param(params, "validator_address", b""),
            _bytes_param(params, "vote_extension", b""),
        )
        return {"status": status.value}
    if method == "list_snapshots":
        return {"snapshots": app.list_snapshots()}
    if method == "offer_snapshot":
        return {"result": app.offer_snapshot(params.get("snapshot")).value}
    if method == "load_snapshot_chunk":
        chunk = app.load_snapshot_chunk(
            _int_param(params, "height", 0),
            _int_param(params, "format", 0),
            _int_param(params, "chunk", 0),
        )
        return {"chunk": b64(chunk)}
    if method == "apply_snapshot_chunk":
        result = app.apply_snapshot_chunk(
            _int_param(params, "index", 0),
            _bytes_param(params, "chunk", b""),
            str(params.get("sender", "")),
        )
        return {"result": result.value}
    raise ValueError(f"unknown method {method!r}")


class RpcServer:
    def __init__(
        self,
        app: Application,
        host: str = RPC_HOST,
        port: int = RPC_PORT,
        token: Optional[str] = RPC_TOKEN,
    ) -> None:
        self.app = app
        self.host = host
        self.port = port
        self.token = token
        self.fatal_error: Optional[AppError] = None
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[ThreadingHTTPServer] = None
        self._stopped = threading.Event()

    @property
    def address(self):
        if not self._server:
            return (self.host, self.port)
        return self._server.server_address[:2]

    def start(self) -> None:
        if self._thread:
            return

        class Handler(BaseHTTPRequestHandler):
            def _send(self, code: int, payload: Dict[str, Any]) -> None:
                data = json.dumps(payload).encode()
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            def do_POST(self) -> None:
                rpc = self.server.rpc
                if self.path != "/abci":
                    self._send(404, {"ok": False, "error": "not_found"})
                    return
                length = int(self.headers.get("Content-Length", "0"))
                if length > MAX_RPC_SIZE:
                    self._send(413, {"ok": False, "error": "payload_too_large"})
                    return
                if rpc.token:
                    token = self.headers.get("X-Auth-Token", "")
                    if token != rpc.token:
                        self._send(401, {"ok": False, "error": "unauthorized"})
                        return
                raw = self.rfile.read(length)
                try:
                    req = json.loads(raw.decode())
                except (UnicodeDecodeError, json.JSONDecodeError):
                    self._send(400, {"ok": False, "error": "invalid_json"})
                    return
                if not isinstance(req, dict):
                    self._send(400, {"ok": False, "error": "invalid_request"})
                    return

                method = str(req.get("method", ""))
                params = req.get("params") or {}
                if not isinstance(params, dict):
                    self._send(400, {"ok": False, "error": "invalid_request"})
                    return
                try:
                    result = dispatch(rpc.app, method, params)
                except AppError as exc:
                    self._send(500, {"ok": False, "error": str(exc), "fatal": True})
                    rpc._on_fatal(exc)
                    return
                except (KeyError, TypeError, ValueError) as exc:
                    self._send(400, {"ok": False, "error": str(exc), "fatal": False})
                    return
                self._send(200, {"ok": True, "result": result})

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("%s - %s", self.client_address[0], format % args)

        self._server = ThreadingHTTPServer((self.host, self.port), Handler)
        self._server.daemon_threads = True
        self._server.rpc = self
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("protocol server listening on http://%s:%d/abci", *self.address)

    def _on_fatal(self, exc: AppError) -> None:
        if self.fatal_error is None:
            self.fatal_error = exc
        logger.critical("fatal error, stopping protocol server: %s", exc)
        threading.Thread(target=self.stop, daemon=True).start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    def stop(self) -> None:
        if self._server and not self._stopped.is_set():
            self._server.shutdown()
            self._server.server_close()
        self._stopped.set()
