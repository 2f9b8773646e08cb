from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_secret(secret: str) -> str:
    return pwd_context.hash(secret)


def verify_secret(secret: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    try:
        return bool(pwd_context.verify(secret, hashed))
    except ValueError:
        # Malformed or non-bcrypt hash stored in the database.
        return False
