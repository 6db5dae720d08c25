from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping
from typing import Any

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from gateway_operator.src import consts
from gateway_operator.src.store import ObjectStore, object_key

LOGGER = logging.getLogger(__name__)

TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"


def certificate_ref_target(ref: Mapping[str, Any], default_namespace: str) -> tuple[str, str]:
    """Return the ``(namespace, name)`` a certificate reference points at."""
    return ref.get("namespace") or default_namespace, ref.get("name") or ""


def core_secret_ref_error(ref: Mapping[str, Any]) -> str | None:
    """Return a message when *ref* does not point at a core Secret, else ``None``."""
    group = ref.get("group") or ""
    kind = ref.get("kind") or "Secret"
    if group not in {"", "core"} or kind != "Secret":
        return f"CertificateRef must reference a core Secret, got {group or 'core'}/{kind}"
    return None


def _grant_allows(
    grant: Mapping[str, Any], from_namespace: str, secret_name: str
) -> bool:
    spec = grant.get("spec") or {}
    from_ok = any(
        entry.get("group") == consts.GATEWAY_API_GROUP
        and entry.get("kind") == consts.GATEWAY.kind
        and entry.get("namespace") == from_namespace
        for entry in spec.get("from") or []
    )
    if not from_ok:
        return False
    return any(
        (entry.get("group") or "") == ""
        and entry.get("kind") == consts.SECRET.kind
        and entry.get("name") in (None, "", secret_name)
        for entry in spec.get("to") or []
    )


def check_reference_grant_for_secret(
    store: ObjectStore, gateway: Mapping[str, Any], ref: Mapping[str, Any]
) -> tuple[str, bool]:
    """Check whether *gateway* may reference the Secret named by *ref*.

    Same-namespace references are always allowed. Cross-namespace ones need a
    ReferenceGrant in the Secret's namespace admitting Gateways from the
    Gateway's namespace. Returns ``(message, granted)``.
    """
    gateway_namespace, _ = object_key(gateway)
    namespace, name = certificate_ref_target(ref, gateway_namespace)
    if namespace == gateway_namespace:
        return "", True

    for grant in store.list(consts.REFERENCE_GRANT, namespace=namespace):
        if _grant_allows(grant, gateway_namespace, name):
            return "", True
    return (
        f"Secret {namespace}/{name} reference not allowed by any ReferenceGrant",
        False,
    )


def _decode(data: Mapping[str, Any], key: str) -> bytes | None:
    raw = data.get(key)
    if not raw:
        return None
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        return None


def is_tls_secret_valid(secret: Mapping[str, Any]) -> bool:
    """Return True when the Secret holds a PEM certificate and its matching private key."""
    data = secret.get("data") or {}
    cert_pem = _decode(data, TLS_CERT_KEY)
    key_pem = _decode(data, TLS_PRIVATE_KEY_KEY)
    if cert_pem is None or key_pem is None:
        return False
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        LOGGER.debug("Secret %s/%s holds an unreadable keypair", *object_key(secret))
        return False

    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    encoding = serialization.Encoding.PEM
    return certificate.public_key().public_bytes(encoding, public_format) == (
        private_key.public_key().public_bytes(encoding, public_format)
    )
