"""
Secrets management for SortEngine using the system keyring.

Cloud provider API keys are kept out of config files. The `keyring`
library maps to the platform store:
- Windows Credential Manager
- macOS Keychain
- Linux Secret Service (GNOME Keyring, KWallet)
"""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "sortengine"


def _entry_name(provider: str) -> str:
    return f"{provider}_api_key"


def get_api_key(provider: str) -> Optional[str]:
    """
    Retrieve API key for a provider from secure storage.

    Args:
        provider: Provider name (e.g., 'openai')

    Returns:
        API key string or None if not found
    """
    try:
        key = keyring.get_password(SERVICE_NAME, _entry_name(provider))
        if key:
            logger.debug(f"Retrieved API key for {provider} from keyring")
        return key
    except KeyringError as e:
        logger.error(f"Failed to retrieve API key for {provider}: {e}")
        return None


def set_api_key(provider: str, api_key: str) -> bool:
    """
    Store API key for a provider in secure storage.

    Returns:
        True if successful, False otherwise
    """
    try:
        keyring.set_password(SERVICE_NAME, _entry_name(provider), api_key)
        logger.info(f"Stored API key for {provider} in keyring")
        return True
    except KeyringError as e:
        logger.error(f"Failed to store API key for {provider}: {e}")
        return False


def delete_api_key(provider: str) -> bool:
    """Remove API key for a provider from secure storage."""
    try:
        keyring.delete_password(SERVICE_NAME, _entry_name(provider))
        logger.info(f"Deleted API key for {provider} from keyring")
        return True
    except PasswordDeleteError:
        logger.warning(f"No API key found for {provider} to delete")
        return False
    except KeyringError as e:
        logger.error(f"Failed to delete API key for {provider}: {e}")
        return False
