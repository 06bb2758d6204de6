import logging
import os
import socket
import sys
import threading
from pathlib import Path
from typing import BinaryIO

from config import ConfigError, ServerConfig, enter_document_root
from paths import Outcome, open_resource
from responses import HTTP_403, HTTP_404, build_index_response, build_ok_head, http_date

logger = logging.getLogger(__name__)

BUFFER_SIZE = 1024
CHUNK_SIZE = 64 * 1024


def format_addr(client_addr) -> str:
    try:
        host, port = client_addr[:2]
    except (TypeError, ValueError):
        return str(client_addr)
    return f"{host}:{port}"


def parse_request_line(data: bytes) -> tuple[str, str] | None:
    """Return (method, target) from the first two tokens, or None if malformed.

    Tokens are decoded with the filesystem encoding so the target names the
    same bytes on disk that the client sent.
    """
    parts = data.split()
    if len(parts) < 2 or not parts[1].startswith(b"/"):
        return None
    return os.fsdecode(parts[0]), os.fsdecode(parts[1])


def stream_file(conn: socket.socket, fp: BinaryIO, length: int) -> int:
    """Send at most ``length`` bytes of ``fp`` and return how many were sent."""
    remaining = length
    while remaining > 0:
        chunk = fp.read(min(CHUNK_SIZE, remaining))
        if not chunk:
            break
        conn.sendall(chunk)
        remaining -= len(chunk)
    return length - remaining


def handle_request(conn: socket.socket, client_addr, root_dir: Path, harden_paths: bool = True):
    client = format_addr(client_addr)
    try:
        try:
            data = conn.recv(BUFFER_SIZE)
        except OSError as e:
            logger.debug(f"{client}: receive failed: {e}")
            return
        if not data:
            logger.debug(f"{client}: closed before sending a request")
            return

        request = parse_request_line(data)
        if request is None:
            conn.sendall(HTTP_403)
            logger.info(f"{client} malformed request line -> 403")
            return
        method, target = request

        if method.upper() != "GET":
            conn.sendall(HTTP_403)
            logger.info(f"{client} {method} {target!r} -> 403")
            return

        date = http_date()
        with open_resource(target, root_dir, harden_paths) as resource:
            if resource.outcome is Outcome.INDEX:
                conn.sendall(build_index_response(date))
                status = 200
            elif resource.outcome is Outcome.FILE:
                conn.sendall(build_ok_head(resource.content_type, resource.length, date))
                sent = stream_file(conn, resource.fp, resource.length)
                if sent != resource.length:
                    logger.warning(f"{client}: {target!r} shrank while sending ({sent}/{resource.length} bytes)")
                status = 200
            elif resource.outcome is Outcome.NOT_FOUND:
                conn.sendall(HTTP_404)
                status = 404
            else:
                conn.sendall(HTTP_403)
                status = 403
        logger.info(f"{client} {method} {target!r} -> {status}")
    except OSError as e:
        logger.warning(f"{client}: connection error while responding: {e}")
    finally:
        try:
            conn.close()
        except OSError:
            pass


class ConnectionDispatcher:
    """Accepts connections and starts one handler thread per connection.

    The accept loop never waits on a handler. With ``max_workers`` set,
    connections arriving while that many handlers are busy are closed
    straight away instead of waiting behind them.
    """

    def __init__(self, listener: socket.socket, root_dir: Path, max_workers: int | None = None,
                 harden_paths: bool = True, poll_interval: float = 0.5):
        self.listener = listener
        self.root_dir = Path(root_dir)
        self.max_workers = max_workers
        self.harden_paths = harden_paths
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._workers: set[threading.Thread] = set()
        self._stop = threading.Event()
        self._is_shut_down = threading.Event()
        self._is_shut_down.set()

    @property
    def address(self):
        return self.listener.getsockname()

    def active_worker_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def serve_forever(self):
        with self._lock:
            # shutdown() may already have run and closed the listener
            if self._stop.is_set():
                return
            self._is_shut_down.clear()
        try:
            self.listener.settimeout(self.poll_interval)
            while not self._stop.is_set():
                try:
                    conn, addr = self.listener.accept()
                except TimeoutError:
                    continue
                except OSError as e:
                    if self._stop.is_set() or self.listener.fileno() == -1:
                        break
                    logger.error(f"Error accepting connection: {e}")
                    continue
                self.dispatch(conn, addr)
        finally:
            self._is_shut_down.set()

    def dispatch(self, conn: socket.socket, addr):
        # Accepted sockets must block regardless of the listener's poll timeout
        conn.settimeout(None)
        client = format_addr(addr)
        thread = threading.Thread(
            target=self._run_handler,
            args=(conn, addr),
            name=f"reipache-{client}",
            daemon=True,
        )
        with self._lock:
            if self.max_workers is not None and len(self._workers) >= self.max_workers:
                logger.warning(f"At capacity ({self.max_workers} handlers); dropping {client}")
                conn.close()
                return
            self._workers.add(thread)
        try:
            thread.start()
        except RuntimeError as e:
            with self._lock:
                self._workers.discard(thread)
            logger.error(f"Could not start handler for {client}: {e}")
            conn.close()

    def _run_handler(self, conn: socket.socket, addr):
        try:
            handle_request(conn, addr, self.root_dir, self.harden_paths)
        except Exception:
            logger.exception(f"Request handler crashed for {format_addr(addr)}")
        finally:
            with self._lock:
                self._workers.discard(threading.current_thread())

    def shutdown(self, timeout: float | None = None):
        """Stop accepting, close the listener and wait for in-flight handlers.

        ``timeout`` bounds the wait for handlers; they are daemon threads, so
        any still blocked on a silent client do not keep the process alive.
        """
        with self._lock:
            self._stop.set()
        self._is_shut_down.wait()
        self.listener.close()
        with self._lock:
            workers = list(self._workers)
        for thread in workers:
            thread.join(timeout)


def create_listener(host: str, port: int, backlog: int = 10) -> socket.socket:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((host, port))
        s.listen(backlog)
    except OSError:
        s.close()
        raise
    return s


def run_server(listener: socket.socket, root_dir: Path, config: ServerConfig):
    dispatcher = ConnectionDispatcher(
        listener,
        root_dir,
        max_workers=config.max_workers,
        harden_paths=config.strict_paths,
    )
    host, port = dispatcher.address[:2]
    limit = config.max_workers or "unlimited"
    logger.info(f"Serving {root_dir} on {host}:{port} (handler limit: {limit})")
    if not config.strict_paths:
        logger.warning("Strict path checking disabled; only the '/.' prefix guard is active")
    try:
        dispatcher.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        dispatcher.shutdown()


def main(argv: list[str] | None = None):
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if len(argv) < 2:
        print("Usage: reipache <port> <document-root>", file=sys.stderr)
        print("For the document root, use '/' to serve the current directory.", file=sys.stderr)
        sys.exit(1)

    try:
        config = ServerConfig.from_env(argv[0], argv[1])
        root_dir = enter_document_root(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        listener = create_listener(config.host, config.port, config.backlog)
    except OSError as e:
        print(f"Error: cannot listen on {config.host}:{config.port}: {e}", file=sys.stderr)
        sys.exit(1)

    run_server(listener, root_dir, config)


if __name__ == "__main__":
    main()
