"""Client certificate and trust root resolution.

mTLS client certificates come either inline (base64 in the client config)
or from the platform-provided files under /etc/mtls. Extra trust roots come
from a directory of PEM files that is added on top of the platform defaults.
Problems with individual inputs are logged and skipped; resolution itself
never fails.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import ssl
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MTLS_CERT_PATH = "/etc/mtls/client.crt"
DEFAULT_MTLS_KEY_PATH = "/etc/mtls/client.key"

_PEM_CERTIFICATE = re.compile(
    rb"-----BEGIN CERTIFICATE-----\r?\n.+?\r?\n-----END CERTIFICATE-----",
    re.DOTALL,
)


@dataclass(frozen=True)
class ClientCertificate:
    """PEM certificate/key pair presented to the server for mutual TLS.

    ``context`` is the TLS client context the pair was loaded into when it was
    parsed. It becomes the base of the transport's context, so the key
    material is only ever loaded once.
    """

    cert_pem: bytes
    key_pem: bytes = field(repr=False)
    source: str
    context: ssl.SSLContext = field(repr=False, compare=False)


@dataclass(frozen=True)
class TrustRootPool:
    """Extra PEM trust roots, installed on top of the platform defaults."""

    certificates: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.certificates

    def install(self, context: ssl.SSLContext) -> None:
        if self.certificates:
            context.load_verify_locations(cadata="\n".join(self.certificates))


def _parse_key_pair(cert_pem: bytes, key_pem: bytes, source: str) -> ClientCertificate:
    """Load a certificate/key pair into a fresh client context.

    ssl only loads key material from files, so the PEM bytes are written to a
    private temporary directory for the duration of the call.

    Raises:
        ssl.SSLError: If the certificate and key do not form a valid pair.
    """
    context = ssl.create_default_context()
    with tempfile.TemporaryDirectory(prefix="ti-mtls-") as tmp:
        cert_path = Path(tmp) / "client.crt"
        key_path = Path(tmp) / "client.key"
        cert_path.write_bytes(cert_pem)
        key_path.touch(mode=0o600)
        key_path.write_bytes(key_pem)
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    return ClientCertificate(cert_pem=cert_pem, key_pem=key_pem, source=source, context=context)


def _decode_base64(value: str) -> bytes:
    # Wrapped output of the base64 tool carries line breaks.
    return base64.b64decode("".join(value.split()), validate=True)


def load_certificate_from_base64(cert_b64: str, key_b64: str) -> ClientCertificate:
    """Decode and parse an inline certificate/key pair.

    Raises:
        ValueError: If either value is not valid base64.
        ssl.SSLError: If the decoded material is not a valid pair.
    """
    try:
        cert_pem = _decode_base64(cert_b64)
    except binascii.Error as e:
        raise ValueError(f"failed to decode base64 certificate: {e}") from e
    try:
        key_pem = _decode_base64(key_b64)
    except binascii.Error as e:
        raise ValueError(f"failed to decode base64 key: {e}") from e
    return _parse_key_pair(cert_pem, key_pem, source="inline")


def load_certificate_from_files(cert_path: str | Path, key_path: str | Path) -> ClientCertificate | None:
    """Load a certificate/key pair if both paths are regular files."""
    cert_file = Path(cert_path)
    key_file = Path(key_path)
    if not (_is_regular_file(cert_file) and _is_regular_file(key_file)):
        return None
    try:
        return _parse_key_pair(cert_file.read_bytes(), key_file.read_bytes(), source=str(cert_file))
    except (OSError, ssl.SSLError) as e:
        logger.warning("failed to load mTLS cert/key pair from %s: %s", cert_file, e)
        return None


def resolve_client_certificate(
    inline_cert_b64: str,
    inline_key_b64: str,
    fallback_cert_path: str | Path = DEFAULT_MTLS_CERT_PATH,
    fallback_key_path: str | Path = DEFAULT_MTLS_KEY_PATH,
) -> ClientCertificate | None:
    """Resolve the mTLS client certificate, or None when there is none.

    Inline base64 material wins when both values are set and valid; any
    decode or parse failure falls through to the fallback files.
    """
    if inline_cert_b64 and inline_key_b64:
        try:
            return load_certificate_from_base64(inline_cert_b64, inline_key_b64)
        except (ValueError, OSError, ssl.SSLError) as e:
            logger.warning("failed to load mTLS certs from base64: %s", e)

    return load_certificate_from_files(fallback_cert_path, fallback_key_path)


def extract_pem_certificates(data: bytes) -> list[str]:
    """Return every well-formed PEM certificate block found in ``data``.

    Text outside the blocks (bundle comments, in any encoding) is ignored, as
    are blocks that do not parse as a certificate.
    """
    certificates: list[str] = []
    for match in _PEM_CERTIFICATE.finditer(data):
        try:
            pem = match.group(0).decode("ascii")
            ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT).load_verify_locations(cadata=pem)
        except (UnicodeDecodeError, ssl.SSLError) as e:
            logger.debug("skipping malformed certificate block: %s", e)
            continue
        certificates.append(pem)
    return certificates


def resolve_trust_roots(directory: str | Path | None) -> TrustRootPool | None:
    """Collect PEM trust roots from the direct entries of ``directory``.

    An empty path means no custom roots (None). Otherwise a pool is always
    returned; unreadable files and files without a valid certificate are
    skipped.
    """
    if not directory:
        return None

    root_dir = Path(directory)
    logger.info("additional certs dir to allow: %s", root_dir)

    try:
        entries = sorted(root_dir.iterdir())
    except OSError as e:
        logger.warning("could not read directory %s: %s", root_dir, e)
        return TrustRootPool()

    certificates: list[str] = []
    for path in entries:
        logger.debug("trying to add certs at %s to root certs", path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning("could not read certificate file %s: %s", path, e)
            continue
        found = extract_pem_certificates(data)
        if not found:
            logger.warning(
                "error adding cert %s to pool, please check format of the certs provided",
                path,
            )
            continue
        certificates.extend(found)
        logger.info("successfully added %d cert(s) at %s to root certs", len(found), path)

    return TrustRootPool(certificates=tuple(certificates))


def _is_regular_file(path: Path) -> bool:
    try:
        return path.is_file()
    except OSError:
        return False
