"""
Tests for Apple JWS x5c chain verification.

Builds a throwaway root, intermediate and leaf with the Apple marker
extensions and signs tokens with the leaf key.
"""

import base64
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from subledger.exceptions import InvalidSignatureError, MalformedPayloadError
from subledger.services.apple_jws import (
    APPLE_INTERMEDIATE_MARKER_OID,
    APPLE_LEAF_MARKER_OID,
    AppleJWSVerifier,
    load_certificate,
)

SIGNED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@dataclass
class Chain:
    root: x509.Certificate
    intermediate: x509.Certificate
    leaf: x509.Certificate
    leaf_key: ec.EllipticCurvePrivateKey


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(
    common_name: str,
    key: ec.EllipticCurvePrivateKey,
    issuer_name: x509.Name,
    issuer_key: ec.EllipticCurvePrivateKey,
    marker: x509.ObjectIdentifier | None = None,
    not_before: datetime = SIGNED_AT - timedelta(days=365),
    not_after: datetime = SIGNED_AT + timedelta(days=365),
    ca: bool = True,
) -> x509.Certificate:
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if marker is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(marker, b"\x05\x00"), critical=False
        )
    return builder.sign(issuer_key, hashes.SHA256())


def build_chain(leaf_marker: bool = True, leaf_not_after: datetime | None = None) -> Chain:
    root_key = ec.generate_private_key(ec.SECP256R1())
    intermediate_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = ec.generate_private_key(ec.SECP256R1())

    root = _certificate("Test Root CA", root_key, _name("Test Root CA"), root_key)
    intermediate = _certificate(
        "Test WWDR",
        intermediate_key,
        root.subject,
        root_key,
        marker=APPLE_INTERMEDIATE_MARKER_OID,
    )
    leaf = _certificate(
        "Test Store Signing",
        leaf_key,
        intermediate.subject,
        intermediate_key,
        marker=APPLE_LEAF_MARKER_OID if leaf_marker else None,
        not_after=leaf_not_after or SIGNED_AT + timedelta(days=365),
        ca=False,
    )
    return Chain(root=root, intermediate=intermediate, leaf=leaf, leaf_key=leaf_key)


def _der_b64(cert: x509.Certificate) -> str:
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode()


def sign(chain: Chain, payload: dict, key: ec.EllipticCurvePrivateKey | None = None) -> str:
    return jwt.encode(
        payload,
        key or chain.leaf_key,
        algorithm="ES256",
        headers={"x5c": [_der_b64(c) for c in (chain.leaf, chain.intermediate, chain.root)]},
    )


def payload() -> dict:
    return {
        "notificationType": "DID_RENEW",
        "notificationUUID": "7e3fb20b-4cdb-47cc-936d-99d65f608138",
        "signedDate": int(SIGNED_AT.timestamp() * 1000),
    }


@pytest.fixture(scope="module")
def chain() -> Chain:
    return build_chain()


class TestAppleJWSVerifier:
    """Tests for AppleJWSVerifier."""

    def test_valid_chain(self, chain):
        """Test that a token signed under a trusted root verifies."""
        verifier = AppleJWSVerifier([chain.root])

        result = verifier.verify(sign(chain, payload()))

        assert result["notificationType"] == "DID_RENEW"

    def test_untrusted_root(self, chain):
        """Test that a chain ending in another root is rejected."""
        other = build_chain()
        verifier = AppleJWSVerifier([other.root])

        with pytest.raises(InvalidSignatureError, match="trusted Apple root"):
            verifier.verify(sign(chain, payload()))

    def test_wrong_signing_key(self, chain):
        """Test that a token not signed by the leaf key is rejected."""
        verifier = AppleJWSVerifier([chain.root])
        token = sign(chain, payload(), key=ec.generate_private_key(ec.SECP256R1()))

        with pytest.raises(InvalidSignatureError, match="Signature check failed"):
            verifier.verify(token)

    def test_leaf_without_marker(self):
        """Test that a leaf lacking the Apple marker extension is rejected."""
        unmarked = build_chain(leaf_marker=False)
        verifier = AppleJWSVerifier([unmarked.root])

        with pytest.raises(InvalidSignatureError, match="Leaf certificate"):
            verifier.verify(sign(unmarked, payload()))

    def test_certificate_expired_at_signing_time(self):
        """Test that validity is checked at the payload's signedDate."""
        expired = build_chain(leaf_not_after=SIGNED_AT - timedelta(days=1))
        verifier = AppleJWSVerifier([expired.root])

        with pytest.raises(InvalidSignatureError, match="not valid at"):
            verifier.verify(sign(expired, payload()))

    def test_short_chain(self, chain):
        """Test that x5c must carry leaf, intermediate and root."""
        verifier = AppleJWSVerifier([chain.root])
        token = jwt.encode(
            payload(),
            chain.leaf_key,
            algorithm="ES256",
            headers={"x5c": [_der_b64(chain.leaf), _der_b64(chain.intermediate)]},
        )

        with pytest.raises(InvalidSignatureError, match="three certificates"):
            verifier.verify(token)

    def test_unexpected_algorithm(self, chain):
        """Test that only ES256 is accepted."""
        verifier = AppleJWSVerifier([chain.root])
        token = jwt.encode(payload(), "secret-key-of-sufficient-length-32b", algorithm="HS256")

        with pytest.raises(InvalidSignatureError, match="alg"):
            verifier.verify(token)

    def test_garbage_token(self, chain):
        """Test that a non-JWS string is malformed."""
        with pytest.raises(MalformedPayloadError):
            AppleJWSVerifier([chain.root]).verify("not-a-jws")

    def test_roots_required(self):
        """Test that verification cannot be enabled without roots."""
        with pytest.raises(ValueError):
            AppleJWSVerifier([])

    def test_unverified_mode(self, chain):
        """Test that without roots and require_chain off, payloads decode unverified."""
        verifier = AppleJWSVerifier([], require_chain=False)

        assert verifier.verifies_signatures is False
        assert verifier.verify(sign(chain, payload()))["signedDate"] == payload()["signedDate"]


class TestLoadCertificate:
    """Tests for load_certificate."""

    def test_pem_and_der(self, chain):
        """Test that both encodings load to the same certificate."""
        pem = chain.root.public_bytes(serialization.Encoding.PEM)
        der = chain.root.public_bytes(serialization.Encoding.DER)

        assert load_certificate(pem) == load_certificate(der) == chain.root
