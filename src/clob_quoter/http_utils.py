from __future__ import annotations

import json
import os
import ssl
from functools import lru_cache
from typing import Any
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import certifi

USER_AGENT = "clob-quoter/0.1"

# ssl.create_default_context keyword -> websocket-client sslopt key
_SSLOPT_KEYS = {"cafile": "ca_certs", "capath": "ca_cert_path"}


def ca_locations() -> dict[str, str]:
    """Trust store for REST and websocket TLS; SSL_CERT_FILE / SSL_CERT_DIR win over certifi."""
    if os.getenv("SSL_CERT_FILE"):
        return {"cafile": os.environ["SSL_CERT_FILE"]}
    if os.getenv("SSL_CERT_DIR"):
        return {"capath": os.environ["SSL_CERT_DIR"]}
    return {"cafile": certifi.where()}


@lru_cache(maxsize=1)
def _ssl_context() -> ssl.SSLContext:
    return ssl.create_default_context(**ca_locations())


def websocket_sslopt() -> dict[str, object]:
    sslopt: dict[str, object] = {"cert_reqs": ssl.CERT_REQUIRED, "check_hostname": True}
    for key, location in ca_locations().items():
        sslopt[_SSLOPT_KEYS[key]] = location
    return sslopt


def get_json(url: str, params: dict[str, str] | None = None, timeout: float = 10.0) -> Any:
    if params:
        url = f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"
    request = Request(url, headers={"User-Agent": USER_AGENT, "Accept": "application/json"})
    with urlopen(request, timeout=timeout, context=_ssl_context()) as response:
        return json.load(response)
