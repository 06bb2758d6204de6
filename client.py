import socket
import sys
from pathlib import Path


def recv_all(sock: socket.socket, timeout: float = 3.0) -> bytes:
    sock.settimeout(timeout)
    chunks: list[bytes] = []
    while True:
        try:
            data = sock.recv(4096)
        except TimeoutError:
            break
        except OSError:
            break
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


def split_head(raw: bytes) -> tuple[bytes, bytes] | None:
    # The server ends lines with "\n"; accept "\r\n" as well. The earliest
    # separator wins so a body containing either sequence is left intact.
    found = [(raw.find(sep), sep) for sep in (b"\r\n\r\n", b"\n\n")]
    found = [(idx, sep) for idx, sep in found if idx != -1]
    if not found:
        return None
    idx, sep = min(found)
    return raw[:idx], raw[idx + len(sep):]


def parse_response(raw: bytes):
    parts = split_head(raw)
    if parts is None:
        return (0, {}, raw)
    header_raw, body = parts
    header_text = header_raw.decode("iso-8859-1", errors="replace")
    lines = header_text.replace("\r\n", "\n").split("\n")
    status_line = lines[0] if lines else ""
    fields = status_line.split()
    status = int(fields[1]) if len(fields) >= 2 and fields[1].isdigit() else 0
    headers = {}
    for line in lines[1:]:
        if ":" in line:
            k, v = line.split(":", 1)
            headers[k.strip().lower()] = v.strip()
    return (status, headers, body)


def fetch_raw(host: str, port: int, request: bytes, timeout: float = 5.0) -> bytes:
    with socket.create_connection((host, port), timeout=timeout) as sock:
        sock.sendall(request)
        return recv_all(sock, timeout=timeout)


def fetch(host: str, port: int, path: str, method: str = "GET", timeout: float = 5.0):
    request = f"{method} {path} HTTP/1.1\r\nHost: {host}\r\nConnection: close\r\n\r\n".encode("iso-8859-1")
    return parse_response(fetch_raw(host, port, request, timeout))


def main():
    if len(sys.argv) != 5:
        print("Usage: python client.py server_host server_port url_path directory", file=sys.stderr)
        sys.exit(1)
    host = sys.argv[1]
    port = int(sys.argv[2])
    path = sys.argv[3]
    outdir = Path(sys.argv[4])
    if not path.startswith("/"):
        path = "/" + path

    status, headers, body = fetch(host, port, path)
    ctype = headers.get("content-type", "")
    if status != 200:
        print(body.decode("utf-8", errors="replace"))
        sys.exit(1)

    if ctype.startswith("text/html"):
        print(body.decode("utf-8", errors="replace"))
    elif ctype.startswith("image/"):
        outdir.mkdir(parents=True, exist_ok=True)
        filename = Path(path).name or "image"
        target = outdir / filename
        with open(target, "wb") as f:
            f.write(body)
        print(str(target))
    else:
        print(f"Unsupported content-type: {ctype}")


if __name__ == "__main__":
    main()
