import email.utils


SERVER_BANNER = "Reipache 1.0"

# Responses use bare "\n" line endings, including the pre-rendered payloads.
EOL = "\n"

INDEX_PAGE_BODY = (
    b"<html><body><h1>It works!</h1>"
    b"<h3>This is the default web page for the \"Reipache\" server.</h3>"
    b"<hr></body></html>"
)

# Content-Length below must match the literal body length.
HTTP_403 = (
    b"HTTP/1.1 403 Forbidden\n"
    b"Content-Length: 166\n"
    b"Connection: close\n"
    b"Content-Type: text/html\n"
    b"\n"
    b"<html><head>\n"
    b"<title>403 Forbidden</title>\n"
    b"</head><body>\n"
    b"<h1>Forbidden</h1>\n"
    b"The requested URL, file type or operation is not allowed on this webserver.\n"
    b"</body></html>\n"
)

HTTP_404 = (
    b"HTTP/1.1 404 Not Found\n"
    b"Content-Length: 146\n"
    b"Connection: close\n"
    b"Content-Type: text/html\n"
    b"\n"
    b"<html><head>\n"
    b"<title>404 Not Found</title>\n"
    b"</head><body>\n"
    b"<h1>404 Not Found</h1>\n"
    b"The requested resource was not found on the server.\n"
    b"</body></html>\n"
)


def http_date(ts: float | None = None) -> str:
    # e.g. "Mon, 19 Oct 2026 20:12:00 GMT"
    return email.utils.formatdate(ts, usegmt=True)


def build_http_response(status_code: int, reason: str, headers: dict, body: bytes = b"") -> bytes:
    lines = [f"HTTP/1.1 {status_code} {reason}{EOL}"]
    for key, value in headers.items():
        lines.append(f"{key}: {value}{EOL}")
    lines.append(EOL)
    header_bytes = "".join(lines).encode("iso-8859-1")
    return header_bytes + body


def ok_headers(content_type: str, content_length: int, date: str) -> dict:
    """Headers of a 200 response in their fixed order.

    Server, Content-Length, Connection, Date, Content-Type.
    """
    return {
        "Server": SERVER_BANNER,
        "Content-Length": str(content_length),
        "Connection": "close",
        "Date": date,
        "Content-Type": content_type,
    }


def build_ok_head(content_type: str, content_length: int, date: str) -> bytes:
    # The body is streamed separately
    return build_http_response(200, "OK", ok_headers(content_type, content_length, date))


def build_index_response(date: str) -> bytes:
    headers = ok_headers("text/html", len(INDEX_PAGE_BODY), date)
    return build_http_response(200, "OK", headers, INDEX_PAGE_BODY)
