"""
Vault Credentials for the Index Tool

The storage cluster credentials the index tool connects with live in
HashiCorp Vault's KV v2 secrets engine; this module reads and checks them.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_SECRET_PATH = "index-tool/storage-credentials"
REQUIRED_CREDENTIAL_KEYS = ("username", "password")


@dataclass(frozen=True)
class StorageCredentials:
    """
    Credentials handed to a storage backend factory.

    Attributes:
        username: Storage principal
        password: Storage secret
        options: Any other keys stored beside them (e.g. quorum hosts)
    """

    username: str
    password: str = field(repr=False)
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_secret(cls, data: Dict[str, Any], path: str) -> "StorageCredentials":
        missing = [key for key in REQUIRED_CREDENTIAL_KEYS if not data.get(key)]
        if missing:
            raise ValueError(f"Storage credentials at {path} are missing: {', '.join(missing)}")
        options = {k: v for k, v in data.items() if k not in REQUIRED_CREDENTIAL_KEYS}
        return cls(data["username"], data["password"], options)

    def as_dict(self) -> Dict[str, Any]:
        return {"username": self.username, "password": self.password, **self.options}


@dataclass
class VaultStatus:
    """Whether Vault can serve credentials right now; truthy when it can."""

    authenticated: bool
    sealed: bool
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.authenticated and not self.sealed


class VaultClient:
    """
    Reads index tool secrets from Vault.

    Args:
        vault_url: Vault server URL (defaults to VAULT_ADDR)
        vault_token: Vault token (defaults to VAULT_TOKEN)
        verify_ssl: Whether to verify TLS certificates
        mount_point: KV v2 mount point

    Raises:
        ValueError: If URL or token are missing
        VaultError: If the token is rejected or Vault is unreachable
    """

    def __init__(
        self,
        vault_url: Optional[str] = None,
        vault_token: Optional[str] = None,
        verify_ssl: bool = True,
        mount_point: str = "secret"
    ):
        self.vault_url = vault_url or os.getenv("VAULT_ADDR")
        self.vault_token = vault_token or os.getenv("VAULT_TOKEN")
        self.mount_point = mount_point

        if not self.vault_url:
            raise ValueError("Vault URL must be provided via parameter or VAULT_ADDR environment variable")
        if not self.vault_token:
            raise ValueError("Vault token must be provided via parameter or VAULT_TOKEN environment variable")

        try:
            self.client = hvac.Client(url=self.vault_url, token=self.vault_token, verify=verify_ssl)
            authenticated = self.client.is_authenticated()
        except Exception as e:
            logger.error(f"Could not reach Vault at {self.vault_url}: {e}")
            raise VaultError(f"Vault initialization failed: {e}")
        if not authenticated:
            raise VaultError(f"Failed to authenticate with Vault at {self.vault_url}")
        logger.info(f"Connected to Vault at {self.vault_url}")

    def read_secret(self, path: str) -> Dict[str, Any]:
        """
        Latest version of the KV secret at path.

        Raises:
            InvalidPath: If nothing is stored at path
            VaultError: If the read fails
        """
        logger.debug(f"Reading secret {self.mount_point}/data/{path}")
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=path,
                mount_point=self.mount_point
            )
        except InvalidPath:
            logger.error(f"No secret at {path}")
            raise
        except Exception as e:
            raise VaultError(f"Reading secret {path} failed: {e}")

        if not response or "data" not in response:
            raise InvalidPath(f"No data found at path: {path}")
        return response["data"].get("data", {})

    def get_storage_credentials(self, path: Optional[str] = None) -> StorageCredentials:
        """
        Storage credentials stored at path.

        Args:
            path: Secret path (INDEX_TOOL_VAULT_PATH, then the default path, when None)

        Raises:
            ValueError: If the secret lacks a username or password
            VaultError: If the read fails
        """
        path = path or os.getenv("INDEX_TOOL_VAULT_PATH", DEFAULT_STORAGE_SECRET_PATH)
        credentials = StorageCredentials.from_secret(self.read_secret(path), path)
        logger.info(f"Loaded storage credentials for {credentials.username} from {path}")
        return credentials

    def status(self) -> VaultStatus:
        """Authentication and seal state, never raising."""
        try:
            if not self.client.is_authenticated():
                return VaultStatus(authenticated=False, sealed=True, error="Not authenticated")
            sealed = self.client.sys.read_health_status().get("sealed", True)
        except Exception as e:
            logger.warning(f"Vault status check failed: {e}")
            return VaultStatus(authenticated=False, sealed=True, error=str(e))
        if sealed:
            logger.warning("Vault is sealed")
        return VaultStatus(authenticated=True, sealed=sealed, error="Vault is sealed" if sealed else None)

    def close(self) -> None:
        self.client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
