import asyncio
import logging

import httpx
import pytest

from descriptor_server import (
    DEFAULT_DESCRIPTOR_FILE,
    DESCRIPTOR_PATH,
    MAX_HEADER_BYTES,
    headers_end,
    start_descriptor_server,
)

DESCRIPTOR = b'<?xml version="1.0"?>\n<root><device><friendlyName>Test</friendlyName></device></root>\n'


@pytest.fixture
def descriptor_file(tmp_path):
    path = tmp_path / "desc.xml"
    path.write_bytes(DESCRIPTOR)
    return path


def make_config(descriptor_path, **overrides):
    config = {
        "http_host": "127.0.0.1",
        "http_port": 0,
        "descriptor_path": str(descriptor_path),
        "friendly_name": "Living Room",
        "http_read_timeout": 2.0,
    }
    config.update(overrides)
    return config


def serve(config, client):
    """Start the server, run client(port), then stop the server."""

    async def run():
        server = await start_descriptor_server(config, logging.getLogger("test"))
        port = server.sockets[0].getsockname()[1]
        try:
            return await client(port)
        finally:
            server.close()
            await server.wait_closed()

    return asyncio.run(run())


async def raw_request(port, request):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(request)
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=5.0)
    writer.close()
    return data


def split_response(data):
    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode().split("\r\n")
    headers = {}
    for line in lines[1:]:
        key, _, value = line.partition(": ")
        headers[key.lower()] = value
    return lines[0], headers, body


def test_landing_page(descriptor_file):
    data = serve(make_config(descriptor_file), lambda port: raw_request(port, b"GET / HTTP/1.1\r\n\r\n"))
    status, headers, body = split_response(data)
    assert status == "HTTP/1.1 200 OK"
    assert headers["content-type"].startswith("text/html")
    assert headers["connection"] == "close"
    assert int(headers["content-length"]) == len(body)
    assert b"Living Room" in body


def test_descriptor_document(descriptor_file):
    request = f"GET {DESCRIPTOR_PATH} HTTP/1.1\r\n\r\n".encode()
    data = serve(make_config(descriptor_file), lambda port: raw_request(port, request))
    status, headers, body = split_response(data)
    assert status == "HTTP/1.1 200 OK"
    assert headers["content-type"] == "application/xml"
    assert body == DESCRIPTOR


def test_unknown_path_is_404(descriptor_file):
    data = serve(make_config(descriptor_file), lambda port: raw_request(port, b"GET /nope HTTP/1.1\r\n\r\n"))
    status, headers, body = split_response(data)
    assert status == "HTTP/1.1 404 Not Found"
    assert body == b""


def test_post_to_descriptor_is_404(descriptor_file):
    request = f"POST {DESCRIPTOR_PATH} HTTP/1.1\r\nContent-Length: 0\r\n\r\n".encode()
    data = serve(make_config(descriptor_file), lambda port: raw_request(port, request))
    assert data.startswith(b"HTTP/1.1 404 Not Found\r\n")


def test_malformed_request_closes_without_response(descriptor_file):
    data = serve(make_config(descriptor_file), lambda port: raw_request(port, b"GARBAGE\r\n\r\n"))
    assert data == b""


def test_bare_lf_request_is_answered(descriptor_file):
    data = serve(make_config(descriptor_file), lambda port: raw_request(port, b"GET / HTTP/1.1\n\n"))
    assert data.startswith(b"HTTP/1.1 200 OK\r\n")


def test_bare_lf_descriptor_request(descriptor_file):
    request = f"GET {DESCRIPTOR_PATH} HTTP/1.1\nHost: x\n\n".encode()
    data = serve(make_config(descriptor_file), lambda port: raw_request(port, request))
    assert split_response(data)[2] == DESCRIPTOR


def test_binary_body_does_not_hide_request_head(descriptor_file):
    request = b"POST /x HTTP/1.1\r\nContent-Length: 2\r\n\r\n\xff\xfe"
    data = serve(make_config(descriptor_file), lambda port: raw_request(port, request))
    assert data.startswith(b"HTTP/1.1 404 Not Found\r\n")


def test_oversized_request_head_is_closed(descriptor_file):
    config = make_config(descriptor_file, http_read_timeout=0)

    async def client(port):
        request = b"GET / HTTP/1.1\r\nX-Filler: " + b"a" * (MAX_HEADER_BYTES + 1)
        try:
            return await raw_request(port, request)
        except ConnectionResetError:
            return b""

    assert serve(config, client) == b""


def test_headers_end():
    assert headers_end(b"GET / HTTP/1.1\r\n") == -1
    assert headers_end(b"GET / HTTP/1.1\r\n\r\nbody") == 14
    assert headers_end(b"GET / HTTP/1.1\n\nbody") == 14
    assert headers_end(b"GET / HTTP/1.1\r\nA: b\r\n\r\nx\n\ny") == 20


def test_incomplete_request_times_out(descriptor_file):
    config = make_config(descriptor_file, http_read_timeout=0.2)
    data = serve(config, lambda port: raw_request(port, b"GET / HTTP/1.1\r\n"))
    assert data == b""


def test_with_http_client(descriptor_file):
    async def client(port):
        base = f"http://127.0.0.1:{port}"
        async with httpx.AsyncClient(timeout=5.0) as http:
            return (
                await http.get(f"{base}/"),
                await http.get(f"{base}{DESCRIPTOR_PATH}?x=1"),
                await http.get(f"{base}/nope"),
            )

    landing, descriptor, missing = serve(make_config(descriptor_file), client)
    assert landing.status_code == 200
    assert landing.headers["content-type"].startswith("text/html")
    assert landing.headers["access-control-allow-origin"] == "*"
    assert descriptor.status_code == 200
    assert descriptor.headers["content-type"] == "application/xml"
    assert descriptor.content == DESCRIPTOR
    assert missing.status_code == 404


def test_missing_asset_fails_only_that_request(tmp_path):
    config = make_config(tmp_path / "missing.xml")

    async def client(port):
        first = await raw_request(port, f"GET {DESCRIPTOR_PATH} HTTP/1.1\r\n\r\n".encode())
        second = await raw_request(port, b"GET / HTTP/1.1\r\n\r\n")
        return first, second

    first, second = serve(config, client)
    assert first.startswith(b"HTTP/1.1 500 Internal Server Error\r\n")
    assert second.startswith(b"HTTP/1.1 200 OK\r\n")


def test_concurrent_connections(descriptor_file):
    async def client(port):
        requests = [
            raw_request(port, f"GET {DESCRIPTOR_PATH} HTTP/1.1\r\n\r\n".encode()) for _ in range(10)
        ]
        return await asyncio.gather(*requests)

    results = serve(make_config(descriptor_file), client)
    assert all(split_response(r)[2] == DESCRIPTOR for r in results)


def test_default_descriptor_file_ships_with_project():
    text = DEFAULT_DESCRIPTOR_FILE.read_text()
    assert "urn:dial-multiscreen-org:service:dial:1" in text
    assert "uuid:170ba466-59ac-4039-a457-0fab725b60ff" in text
