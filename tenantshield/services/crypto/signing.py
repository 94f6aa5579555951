from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Final, Protocol

from botocore.exceptions import BotoCoreError, ClientError
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from tenantshield.core.config import get_settings
from tenantshield.core.errors import SignerConfigError
from tenantshield.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material, derive_key


logger = logging.getLogger(__name__)

# KMS RSASSA_PSS_SHA_256 signs with a salt as long as the SHA-256 digest.
_PSS_SALT_LENGTH = 32


class ReportSigner(Protocol):
    provider: str

    def sign(self, payload: bytes, key_id: str) -> str:
        ...

    def verify(self, payload: bytes, signature: str, key_id: str) -> bool:
        ...


class HmacReportSigner:
    """Local HMAC-SHA256 signer keyed per key id from a single master secret."""

    provider: Final[str] = "local_hmac"

    def __init__(self, master_key: bytes | None = None) -> None:
        self._master_key = master_key if master_key is not None else _load_master_key()

    def _key_for(self, key_id: str) -> bytes:
        # HMAC-based derivation keeps per-key-id secrets deterministic without persisting them.
        return hmac.new(self._master_key, key_id.encode("utf-8"), hashlib.sha256).digest()

    def sign(self, payload: bytes, key_id: str) -> str:
        return hmac.new(self._key_for(key_id), payload, hashlib.sha256).hexdigest()

    def verify(self, payload: bytes, signature: str, key_id: str) -> bool:
        expected = self.sign(payload, key_id)
        return hmac.compare_digest(expected, signature)


class AwsKmsReportSigner:
    """Sign with an asymmetric AWS KMS key; verify offline against its public key."""

    provider: Final[str] = "aws_kms"
    signing_algorithm: Final[str] = "RSASSA_PSS_SHA_256"

    def __init__(self, region: str | None = None, client: Any | None = None) -> None:
        self._region = region or get_settings().aws_region
        self._client = client
        self._public_keys: dict[str, rsa.RSAPublicKey] = {}

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import boto3

        self._client = boto3.client("kms", region_name=self._region)
        return self._client

    def sign(self, payload: bytes, key_id: str) -> str:
        response = self._get_client().sign(
            KeyId=key_id,
            Message=payload,
            MessageType="RAW",
            SigningAlgorithm=self.signing_algorithm,
        )
        return b64encode_bytes(response["Signature"])

    def public_key(self, key_id: str) -> rsa.RSAPublicKey:
        cached = self._public_keys.get(key_id)
        if cached is not None:
            return cached
        response = self._get_client().get_public_key(KeyId=key_id)
        loaded = serialization.load_der_public_key(response["PublicKey"])
        if not isinstance(loaded, rsa.RSAPublicKey):
            raise SignerConfigError(f"KMS key {key_id} is not an RSA signing key")
        self._public_keys[key_id] = loaded
        return loaded

    def verify(self, payload: bytes, signature: str, key_id: str) -> bool:
        try:
            key = self.public_key(key_id)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("report_signer_public_key_unavailable key_id=%s", key_id, exc_info=exc)
            return False
        try:
            key.verify(
                b64decode_str(signature),
                payload,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=_PSS_SALT_LENGTH),
                hashes.SHA256(),
            )
        except (InvalidSignature, ValueError):
            return False
        return True


_SIGNERS: dict[str, type] = {
    "local_hmac": HmacReportSigner,
    "aws_kms": AwsKmsReportSigner,
}


def get_report_signer() -> ReportSigner:
    settings = get_settings()
    signer_cls = _SIGNERS.get(settings.erasure_signing_provider)
    if signer_cls is None:
        raise SignerConfigError(f"Unsupported signing provider: {settings.erasure_signing_provider}")
    return signer_cls()


def _load_master_key() -> bytes:
    settings = get_settings()
    if settings.erasure_signing_key:
        try:
            return decode_key_material(settings.erasure_signing_key)
        except ValueError as exc:
            raise SignerConfigError("ERASURE_SIGNING_KEY must be base64 or hex") from exc
    if not settings.allows_dev_secrets:
        # The dev key derives from public config, so its signatures prove nothing.
        raise SignerConfigError(f"ERASURE_SIGNING_KEY is required when ENVIRONMENT={settings.environment}")
    logger.warning(
        "erasure.signing.dev_key_in_use environment=%s; reports signed with it can be forged",
        settings.environment,
    )
    return derive_key(settings.app_name, purpose="erasure-signing")
