"""Credentials parser for reading credentials from credentials.md or the environment."""

import os
import re
from typing import Dict


class CredentialsError(Exception):
    """Exception raised when credentials cannot be parsed."""
    pass


REQUIRED_KEYS = [
    'SPOTIFY_CLIENT_ID',
    'SPOTIFY_CLIENT_SECRET',
    'SPOTIFY_REDIRECT_URI',
    'TIDAL_CLIENT_ID',
    'TIDAL_CLIENT_SECRET',
]

OPTIONAL_DEFAULTS = {
    'COUNTRY_CODE': 'US',
    'DATA_PATH': 'data',
    'DEBUG': 'false',
}


def parse_credentials(credentials_path: str = "credentials.md") -> Dict[str, str]:
    """
    Parse credentials from a credentials.md file.

    Keys absent from the file (or the whole file, when it does not exist)
    are looked up in the environment, so container deployments can skip
    the file entirely.

    Args:
        credentials_path: Path to the credentials file (default: credentials.md)

    Returns:
        Dictionary with every key of REQUIRED_KEYS plus OPTIONAL_DEFAULTS

    Raises:
        CredentialsError: If required credentials are missing from both sources
    """
    credentials = {}

    if os.path.exists(credentials_path):
        with open(credentials_path, 'r', encoding='utf-8') as f:
            content = f.read()

        # KEY=value, one per line; markdown headings are ignored
        for key, value in re.findall(r'^\s*([A-Z_]+)=(.+)$', content, re.MULTILINE):
            credentials[key] = value.strip()

    for key in REQUIRED_KEYS + list(OPTIONAL_DEFAULTS):
        if key not in credentials and os.environ.get(key):
            credentials[key] = os.environ[key].strip()

    missing_keys = [key for key in REQUIRED_KEYS if not credentials.get(key)]
    if missing_keys:
        if not os.path.exists(credentials_path):
            raise CredentialsError(
                f"Credentials file not found: {credentials_path} "
                f"(and missing from environment: {', '.join(missing_keys)})"
            )
        raise CredentialsError(
            f"Missing required credentials: {', '.join(missing_keys)}"
        )

    for key, default in OPTIONAL_DEFAULTS.items():
        credentials.setdefault(key, default)

    return credentials
