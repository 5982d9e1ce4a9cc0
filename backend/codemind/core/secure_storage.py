# backend/codemind/core/secure_storage.py
import logging
from typing import Optional

import keyring
# Import specific exceptions to avoid issues with mocking the keyring module in tests.
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

# All Codemind credentials live under one service name so they never collide
# with other applications using the same OS keychain.
SERVICE_NAME = "CodemindAgent"


def _validate_key(key: str, action: str) -> None:
    if not isinstance(key, str) or not key:
        logger.error(f"Attempted to {action} credential with invalid key.")
        raise ValueError("Credential key cannot be empty.")


def store_credential(key: str, secret: str) -> None:
    """
    Stores an API key in the OS credential manager.

    Raises:
        ValueError: If the key or secret is empty.
        RuntimeError: If the keyring backend is unavailable.
    """
    _validate_key(key, "store")
    if not isinstance(secret, str):
        raise ValueError("Credential secret must be a string.")
    secret = secret.strip()
    if not secret:
        raise ValueError("Credential secret cannot be empty after stripping.")

    try:
        keyring.set_password(SERVICE_NAME, key, secret)
        logger.info(f"Stored credential for key '{key}' securely.")
    except KeyringError as e:
        logger.exception(f"Failed to store credential for key '{key}'. Keyring backend might be misconfigured or unavailable.")
        raise RuntimeError(f"Secure storage unavailable: {e}") from e


def retrieve_credential(key: str) -> Optional[str]:
    """
    Reads an API key from the OS credential manager.

    Returns None when nothing is stored or the backend is unavailable; callers
    then fall back to the environment.
    """
    _validate_key(key, "retrieve")
    try:
        secret = keyring.get_password(SERVICE_NAME, key)
    except KeyringError:
        logger.warning(f"Failed to retrieve credential for key '{key}'. Keyring backend might be unavailable.")
        return None

    if secret and secret.strip():
        logger.debug(f"Retrieved credential for key '{key}' securely.")
        return secret.strip()
    logger.debug(f"No credential found for key '{key}' in secure storage.")
    return None


def delete_credential(key: str) -> bool:
    """
    Removes an API key. A key that was never stored counts as deleted.

    Returns:
        False only if the backend reported an error.
    """
    _validate_key(key, "delete")
    try:
        keyring.delete_password(SERVICE_NAME, key)
        logger.info(f"Deleted credential for key '{key}' from secure storage.")
        return True
    except PasswordDeleteError:
        logger.debug(f"Credential for key '{key}' not found during deletion. Treating as success.")
        return True
    except KeyringError:
        logger.error(f"Failed to delete credential for key '{key}'. Keyring backend error.", exc_info=True)
        return False
