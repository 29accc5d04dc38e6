"""HTTP transport construction for the TI client.

The request executor only needs something that can send an httpx request and
hand back a response, i.e. an ``httpx.Client``. Three variants exist:

- the shared default client, used when no TLS settings differ from the
  platform defaults;
- a custom-TLS client built per TI client (skip-verify, extra trust roots,
  mTLS certificate);
- any client the caller injects, typically one wrapping
  ``httpx.MockTransport`` in tests.

Redirects are never followed; the 3xx response is surfaced to the caller.
"""

from __future__ import annotations

import logging
import ssl
import threading

import httpx

from ti_client.certs import ClientCertificate, TrustRootPool

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


def build_ssl_context(
    skip_verify: bool,
    trust_roots: TrustRootPool | None,
    client_cert: ClientCertificate | None,
) -> ssl.SSLContext:
    """Build the TLS context for a custom transport.

    skip_verify disables all verification and takes precedence over
    trust_roots, which are then ignored. The client certificate is attached
    in either mode: its context, which already holds the key pair, is used as
    the base so the key is not loaded a second time.
    """
    if client_cert is not None:
        logger.info("setting mTLS client certs in TI service client (source: %s)", client_cert.source)
        context = client_cert.context
    else:
        context = ssl.create_default_context()

    if skip_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        logger.warning("TLS verification disabled for TI service client")
    elif trust_roots is not None:
        trust_roots.install(context)

    return context


def build_transport(
    skip_verify: bool,
    trust_roots: TrustRootPool | None,
    client_cert: ClientCertificate | None,
    timeout: float = DEFAULT_TIMEOUT,
) -> httpx.Client:
    """Create an httpx.Client configured with the given TLS settings."""
    context = build_ssl_context(skip_verify, trust_roots, client_cert)
    return httpx.Client(
        verify=context,
        follow_redirects=False,
        timeout=timeout,
        trust_env=True,
    )


def needs_custom_transport(
    skip_verify: bool,
    trust_roots: TrustRootPool | None,
    client_cert: ClientCertificate | None,
) -> bool:
    return skip_verify or trust_roots is not None or client_cert is not None


class _SharedClient:
    """Lazily created, process-wide default client."""

    def __init__(self) -> None:
        self._client: httpx.Client | None = None
        self._lock = threading.Lock()

    def get(self) -> httpx.Client:
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(follow_redirects=False, timeout=DEFAULT_TIMEOUT)
                logger.debug("default TI HTTP client created")
            return self._client


_default = _SharedClient()


def default_transport() -> httpx.Client:
    """Return the shared default client (created on first use)."""
    return _default.get()


def transport_for(
    skip_verify: bool,
    trust_roots: TrustRootPool | None,
    client_cert: ClientCertificate | None,
) -> httpx.Client:
    """Return the shared client for default settings, else a new custom one."""
    if needs_custom_transport(skip_verify, trust_roots, client_cert):
        return build_transport(skip_verify, trust_roots, client_cert)
    return default_transport()
