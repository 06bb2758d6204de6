import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

import server as server_module
from client import fetch, fetch_raw
from conftest import start_server
from server import ConnectionDispatcher, create_listener


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_concurrent_requests_get_their_own_files(docroot, server):
    host, port = server
    num_requests = 24
    expected = {}
    for i in range(num_requests):
        content = f"<p>file {i}</p>".encode() * (i + 1) * 100
        (docroot / f"page{i}.html").write_bytes(content)
        expected[f"/page{i}.html"] = content

    results = {}
    with ThreadPoolExecutor(max_workers=num_requests) as executor:
        futures = {executor.submit(fetch, host, port, path): path for path in expected}
        for future in as_completed(futures):
            results[futures[future]] = future.result()

    for path, content in expected.items():
        status, headers, body = results[path]
        assert status == 200, path
        assert headers["content-length"] == str(len(content))
        assert body == content


def test_idle_client_does_not_block_others(server):
    host, port = server
    idle = socket.create_connection((host, port))
    try:
        status, _, _ = fetch(host, port, "/")
        assert status == 200
    finally:
        idle.close()


def test_many_idle_clients_do_not_block_others(server):
    host, port = server
    idle = [socket.create_connection((host, port)) for _ in range(80)]
    try:
        status, _, body = fetch(host, port, "/", timeout=5.0)
        assert status == 200
        assert body
    finally:
        for sock in idle:
            sock.close()


def test_handler_limit_drops_connections_instead_of_queueing(docroot, caplog):
    dispatcher, thread = start_server(docroot, max_workers=2)
    host, port = dispatcher.address[:2]
    idle = [socket.create_connection((host, port)) for _ in range(2)]
    try:
        assert wait_for(lambda: dispatcher.active_worker_count() == 2)
        with caplog.at_level(logging.WARNING, logger="server"):
            assert fetch_raw(host, port, b"GET / HTTP/1.1\r\n\r\n", timeout=2.0) == b""
        assert "At capacity (2 handlers)" in caplog.text
    finally:
        for sock in idle:
            sock.close()
    assert wait_for(lambda: dispatcher.active_worker_count() == 0)
    assert fetch(host, port, "/")[0] == 200
    dispatcher.shutdown()
    thread.join(timeout=5)


def test_handler_crash_is_logged_and_loop_continues(docroot, server, monkeypatch, caplog):
    host, port = server
    real_handler = server_module.handle_request

    def crash(conn, *args, **kwargs):
        conn.close()
        raise RuntimeError("handler blew up")

    caplog.set_level(logging.ERROR, logger="server")
    monkeypatch.setattr(server_module, "handle_request", crash)
    fetch(host, port, "/")
    assert wait_for(lambda: "Request handler crashed" in caplog.text)

    monkeypatch.setattr(server_module, "handle_request", real_handler)
    status, _, _ = fetch(host, port, "/")
    assert status == 200


def test_thread_start_failure_closes_connection(docroot, monkeypatch, caplog):
    listener = create_listener("127.0.0.1", 0)
    dispatcher = ConnectionDispatcher(listener, docroot)

    def refuse(self):
        raise RuntimeError("can't start new thread")

    monkeypatch.setattr(threading.Thread, "start", refuse)
    server_side, client_side = socket.socketpair()
    try:
        with caplog.at_level(logging.ERROR, logger="server"):
            dispatcher.dispatch(server_side, ("10.0.0.1", 4242))
        assert server_side.fileno() == -1
        assert client_side.recv(16) == b""
        assert "Could not start handler for 10.0.0.1:4242" in caplog.text
        assert dispatcher.active_worker_count() == 0
    finally:
        client_side.close()
        listener.close()


class FlakyListener:
    """Listener whose first accept fails, then asks the dispatcher to stop."""

    def __init__(self):
        self.calls = 0
        self.dispatcher = None

    def settimeout(self, value):
        pass

    def fileno(self):
        return 99

    def getsockname(self):
        return ("127.0.0.1", 0)

    def close(self):
        pass

    def accept(self):
        self.calls += 1
        if self.calls == 1:
            raise OSError("too many open files")
        self.dispatcher._stop.set()
        raise TimeoutError


def test_accept_failure_is_logged_and_skipped(tmp_path, caplog):
    listener = FlakyListener()
    dispatcher = ConnectionDispatcher(listener, tmp_path)
    listener.dispatcher = dispatcher
    with caplog.at_level(logging.ERROR, logger="server"):
        dispatcher.serve_forever()
    dispatcher.shutdown()
    assert listener.calls == 2
    assert "Error accepting connection: too many open files" in caplog.text


def test_shutdown_stops_accept_loop(docroot):
    listener = create_listener("127.0.0.1", 0)
    dispatcher = ConnectionDispatcher(listener, docroot, poll_interval=0.05)
    thread = threading.Thread(target=dispatcher.serve_forever, daemon=True)
    thread.start()
    host, port = dispatcher.address[:2]
    assert fetch(host, port, "/")[0] == 200
    dispatcher.shutdown()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert listener.fileno() == -1


def test_shutdown_before_serving_starts(docroot):
    listener = create_listener("127.0.0.1", 0)
    dispatcher = ConnectionDispatcher(listener, docroot, poll_interval=0.05)
    dispatcher.shutdown()
    # A late serve_forever must return quietly instead of touching the closed listener
    dispatcher.serve_forever()
    assert listener.fileno() == -1
