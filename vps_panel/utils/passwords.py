# vps_panel/utils/passwords.py
import hashlib
import hmac
import os

ITERATIONS = 120_000


def hash_password(password: str) -> str:
    """솔트를 붙인 PBKDF2-SHA256 해시를 'salt$hash' 형태의 문자열로 반환합니다."""
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, ITERATIONS)
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        salt_hex, digest_hex = password_hash.split("$", 1)
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, ITERATIONS)
    return hmac.compare_digest(digest.hex(), digest_hex)
