import base64
import logging
import secrets
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from fusionsolar_exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Vendor limit per RSA block, in bytes of the percent-encoded password
CHUNK_SIZE = 270
CHUNK_SEPARATOR = "00000001"


@dataclass(frozen=True)
class PublicKeyDescriptor:
    """Public key info returned by the login bootstrap endpoint."""

    version: Optional[str]
    pub_key: Optional[str]
    time_stamp: int
    enable_encrypt: bool

    @classmethod
    def from_json(cls, data: dict) -> "PublicKeyDescriptor":
        return cls(
            version=data.get("version"),
            pub_key=data.get("pubKey"),
            time_stamp=int(data.get("timeStamp") or 0),
            enable_encrypt=bool(data.get("enableEncrypt", False)),
        )

    @property
    def encryption_enabled(self) -> bool:
        """True when the server wants an RSA encrypted password."""
        return self.enable_encrypt and bool(self.pub_key) and bool(self.version)


def secure_nonce() -> str:
    """Return 16 random bytes as lowercase hex."""
    return secrets.token_hex(16)


class PasswordEncryptor:
    """Builds the password field of the login request."""

    def encode(self, descriptor: PublicKeyDescriptor, password: str) -> str:
        """Return the login payload for the given key descriptor.

        Falls back to the plaintext password when the server has encryption
        disabled or did not send a key.
        """
        if not descriptor.encryption_enabled:
            logger.debug("Password encryption disabled by server, using legacy login")
            return password
        return self.encrypt(descriptor.pub_key, password, descriptor.version)

    def encrypt(self, pub_key: str, password: str, version: str) -> str:
        """Encrypt a password with RSA/OAEP (SHA-384).

        Args:
            pub_key: PEM armored (or bare base64 DER) RSA public key
            password: Plaintext password
            version: Server key version, appended verbatim to the result

        Returns:
            str: Base64 chunks joined by ``00000001`` followed by the version

        Raises:
            ConfigurationError: If the key cannot be loaded or used
        """
        public_key = self._load_public_key(pub_key)
        oaep = padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA384()),
            algorithm=hashes.SHA384(),
            label=None,
        )

        encoded = quote(password, safe="")
        chunks = []
        for start in range(0, len(encoded), CHUNK_SIZE):
            chunk = encoded[start:start + CHUNK_SIZE].encode("utf-8")
            try:
                ciphertext = public_key.encrypt(chunk, oaep)
            except ValueError as e:
                raise ConfigurationError(f"Failed to encrypt password: {e}") from e
            chunks.append(base64.b64encode(ciphertext).decode("ascii"))

        return CHUNK_SEPARATOR.join(chunks) + version

    @staticmethod
    def _load_public_key(pub_key: str) -> rsa.RSAPublicKey:
        body = (
            pub_key.replace("-----BEGIN PUBLIC KEY-----", "")
            .replace("-----END PUBLIC KEY-----", "")
        )
        body = "".join(body.split())
        try:
            key = serialization.load_der_public_key(base64.b64decode(body, validate=True))
        except (ValueError, UnsupportedAlgorithm) as e:
            raise ConfigurationError("Failed to load public key for encryption") from e

        if not isinstance(key, rsa.RSAPublicKey):
            raise ConfigurationError("Public key for encryption is not an RSA key")
        return key
