import hashlib
import secrets
import string

PBKDF2_ITERATIONS = 120_000
API_KEY_PREFIX = "mny_"
API_KEY_ALPHABET = string.ascii_letters + string.digits


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2${PBKDF2_ITERATIONS}${salt}${digest}"


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        scheme, iterations, salt, expected = stored_hash.split("$", 3)
    except ValueError:
        return False
    if scheme != "pbkdf2":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations)).hex()
    return secrets.compare_digest(digest, expected)


def generate_api_key() -> str:
    return API_KEY_PREFIX + "".join(secrets.choice(API_KEY_ALPHABET) for _ in range(32))


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def api_key_prefix(raw_key: str) -> str:
    return raw_key[: len(API_KEY_PREFIX) + 8]


def new_session_token() -> str:
    return secrets.token_urlsafe(32)
