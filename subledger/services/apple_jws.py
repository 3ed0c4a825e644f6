"""
Apple JWS Verification - x5c certificate chain validation for App Store payloads.

NO DICTIONARIES - Verified payloads are turned into typed models by callers.

Every signed payload from Apple (notification, transaction, renewal info)
carries its certificate chain in the JWS `x5c` header: leaf, intermediate
(Apple Worldwide Developer Relations) and root. A payload is trusted only
when:
1. The chain root is one of the configured Apple root certificates
2. Each certificate is issued and signed by the next one up
3. The leaf and intermediate carry Apple's marker extensions
4. Every certificate was valid at the payload's signing time
5. The ES256 signature verifies with the leaf public key
"""

import base64
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from structlog import get_logger

from subledger.exceptions import InvalidSignatureError, MalformedPayloadError
from subledger.models.api import Store

logger = get_logger(__name__)

# Apple marker extensions (see Apple PKI, "Mac App Store Receipt Signing")
APPLE_LEAF_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a PEM or DER certificate."""
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def _has_extension(cert: x509.Certificate, oid: x509.ObjectIdentifier) -> bool:
    try:
        cert.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound:
        return False
    return True


def _fingerprint(cert: x509.Certificate) -> bytes:
    return cert.fingerprint(hashes.SHA256())


class AppleJWSVerifier:
    """Verifies Apple-signed JWS tokens against trusted root certificates."""

    def __init__(
        self,
        root_certificates: Sequence[x509.Certificate],
        require_chain: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """
        Initialize verifier.

        Args:
            root_certificates: Trusted Apple root CA certificates
            require_chain: When False and no roots are configured, payloads are
                decoded without verification (local development only)
            clock: Fallback validity time when a payload carries no signedDate
        """
        self._root_fingerprints = {_fingerprint(c) for c in root_certificates}
        self.require_chain = require_chain
        self._clock = clock

        if not self._root_fingerprints and require_chain:
            raise ValueError("At least one Apple root certificate is required")

    @classmethod
    def from_files(
        cls, paths: Sequence[str], require_chain: bool = True
    ) -> "AppleJWSVerifier":
        """Load trusted roots from DER (.cer) or PEM files."""
        roots = [load_certificate(Path(p).read_bytes()) for p in paths]
        logger.info("apple_root_certificates_loaded", count=len(roots))
        return cls(roots, require_chain=require_chain)

    @property
    def verifies_signatures(self) -> bool:
        return bool(self._root_fingerprints)

    def verify(self, token: str) -> dict[str, object]:
        """
        Verify a JWS token and return its payload.

        Raises:
            MalformedPayloadError: Not a decodable JWS
            InvalidSignatureError: Chain or signature verification failed
        """
        try:
            header = jwt.get_unverified_header(token)
            unverified: dict[str, object] = jwt.decode(
                token, options={"verify_signature": False}
            )
        except jwt.DecodeError as exc:
            raise MalformedPayloadError(Store.APPSTORE, f"Invalid JWS: {exc}") from exc

        if not self.verifies_signatures:
            logger.warning("apple_jws_signature_not_verified")
            return unverified

        if header.get("alg") != "ES256":
            raise InvalidSignatureError(Store.APPSTORE, f"Unexpected alg {header.get('alg')}")

        chain = self._load_chain(header.get("x5c"))
        signed_at = self._signing_time(unverified)
        self._verify_chain(chain, signed_at)

        leaf = chain[0]
        try:
            payload: dict[str, object] = jwt.decode(
                token,
                key=leaf.public_key(),  # type: ignore[arg-type]
                algorithms=["ES256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            raise InvalidSignatureError(Store.APPSTORE, f"Signature check failed: {exc}") from exc

        return payload

    def _load_chain(self, x5c: object) -> list[x509.Certificate]:
        if not isinstance(x5c, list) or len(x5c) < 3:
            raise InvalidSignatureError(Store.APPSTORE, "x5c chain must hold three certificates")
        try:
            return [x509.load_der_x509_certificate(base64.b64decode(c)) for c in x5c[:3]]
        except (ValueError, TypeError) as exc:
            raise InvalidSignatureError(Store.APPSTORE, f"Unreadable x5c certificate: {exc}") from exc

    def _signing_time(self, payload: dict[str, object]) -> datetime:
        signed_date = payload.get("signedDate")
        if isinstance(signed_date, (int, float)):
            return datetime.fromtimestamp(signed_date / 1000, tz=UTC)
        return self._clock()

    def _verify_chain(self, chain: list[x509.Certificate], signed_at: datetime) -> None:
        leaf, intermediate, root = chain

        if _fingerprint(root) not in self._root_fingerprints:
            raise InvalidSignatureError(Store.APPSTORE, "Chain root is not a trusted Apple root")

        try:
            leaf.verify_directly_issued_by(intermediate)
            intermediate.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature) as exc:
            raise InvalidSignatureError(Store.APPSTORE, f"Broken certificate chain: {exc}") from exc

        if not _has_extension(leaf, APPLE_LEAF_MARKER_OID):
            raise InvalidSignatureError(Store.APPSTORE, "Leaf certificate lacks Apple marker")
        if not _has_extension(intermediate, APPLE_INTERMEDIATE_MARKER_OID):
            raise InvalidSignatureError(
                Store.APPSTORE, "Intermediate certificate lacks Apple marker"
            )

        for cert in chain:
            if not cert.not_valid_before_utc <= signed_at <= cert.not_valid_after_utc:
                raise InvalidSignatureError(
                    Store.APPSTORE,
                    f"Certificate {cert.subject.rfc4514_string()} not valid at {signed_at.isoformat()}",
                )
