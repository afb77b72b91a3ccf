"""Access-token and password checks for transfers."""
import base64
import hashlib
import hmac
import os
import secrets

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.config import PASSWORD_HASH_ITERATIONS

TOKEN_BYTES = 32
SALT_BYTES = 16
PASSWORD_SCHEME = "pbkdf2_sha256"


def generate_access_token(nbytes: int = TOKEN_BYTES) -> str:
    return secrets.token_urlsafe(nbytes)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def verify_access_token(token: str | None, digest: str) -> bool:
    if not token:
        return False
    return hmac.compare_digest(token_digest(token), digest)


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def hash_password(password: str, iterations: int | None = None) -> str:
    """Return ``pbkdf2_sha256$<iterations>$<salt>$<hash>`` with a fresh salt."""
    iterations = iterations or PASSWORD_HASH_ITERATIONS
    salt = os.urandom(SALT_BYTES)
    derived = _derive(password, salt, iterations)
    return "$".join(
        [
            PASSWORD_SCHEME,
            str(iterations),
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(derived).decode("ascii"),
        ]
    )


def verify_password(password: str | None, encoded: str) -> bool:
    if not password:
        return False
    try:
        scheme, iterations, salt_b64, hash_b64 = encoded.split("$")
        if scheme != PASSWORD_SCHEME:
            return False
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(hash_b64)
        rounds = int(iterations)
    except ValueError:
        return False
    if rounds < 1:
        return False
    return hmac.compare_digest(_derive(password, salt, rounds), expected)
