import threading

import pytest

from server import ConnectionDispatcher, create_listener


@pytest.fixture
def docroot(tmp_path):
    root = tmp_path / "www"
    root.mkdir()
    (root / "index.html").write_bytes(b"<html><body>hello</body></html>")
    (root / "pic.png").write_bytes(bytes(range(256)) * 4)
    (root / "empty.gif").write_bytes(b"")
    (root / "notes.txt").write_bytes(b"plain text")
    (root / "sub").mkdir()
    (root / "sub" / "page.htm").write_bytes(b"<p>nested</p>")
    (root / "dir.html").mkdir()
    # Sibling of the document root, reachable only through traversal
    (tmp_path / "secret.html").write_bytes(b"<p>secret</p>")
    return root


def start_server(root, **kwargs):
    listener = create_listener("127.0.0.1", 0, backlog=128)
    dispatcher = ConnectionDispatcher(listener, root, poll_interval=0.05, **kwargs)
    thread = threading.Thread(target=dispatcher.serve_forever, daemon=True)
    thread.start()
    return dispatcher, thread


@pytest.fixture
def server(docroot):
    dispatcher, thread = start_server(docroot)
    yield dispatcher.address[:2]
    dispatcher.shutdown()
    thread.join(timeout=5)


@pytest.fixture
def lenient_server(docroot):
    dispatcher, thread = start_server(docroot, harden_paths=False)
    yield dispatcher.address[:2]
    dispatcher.shutdown()
    thread.join(timeout=5)
