"""Caller authentication for the audit append endpoint.

Appends come from the mutation dispatcher, the component that changes RBAC
objects in the cluster and then records what it did. An API key map ties each
key to a dispatcher identity so the writer of a record is not
client-controlled.

Env vars:
  - RBAC_API_KEYS_JSON: JSON dict mapping api_key -> dispatcher_id
  - RBAC_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

ENV_API_KEYS_JSON = "RBAC_API_KEYS_JSON"
ENV_API_KEYS_FILE = "RBAC_API_KEYS_FILE"

logger = logging.getLogger("rbac_lens.auth")


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity context."""

    dispatcher_id: Optional[str]
    authenticated: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key authentication config."""

    api_key_to_dispatcher: Dict[str, str] = field(default_factory=dict)
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def from_mapping(cls, mapping: Dict[str, str]) -> "ApiKeyAuth":
        return cls(api_key_to_dispatcher={str(k): str(v) for k, v in mapping.items()}, configured=True)

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load API key mapping from env/file.

        If configuration is *present* but malformed, the instance carries
        ``config_error`` and every request is rejected.
        """
        mapping: Dict[str, str] = {}
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        configured = bool(raw_json or file_path)

        try:
            if raw_json:
                data = json.loads(raw_json)
                if not isinstance(data, dict):
                    raise ValueError(f"{ENV_API_KEYS_JSON} must be a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError(f"{ENV_API_KEYS_FILE} must contain a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError) as e:
            logger.error("Invalid API key configuration: %s", e)
            config_error = "API_KEY_CONFIG_INVALID"
            mapping = {}

        return cls(api_key_to_dispatcher=mapping, configured=configured, config_error=config_error)

    def enabled(self) -> bool:
        return self.configured

    def resolve_context(self, api_key: Optional[str]) -> AuthContext:
        """Resolve the caller behind ``api_key``.

        When no key map is configured every caller is anonymous and
        unauthenticated; deciding whether that is acceptable is up to the
        endpoint.
        """
        if self.config_error:
            return AuthContext(dispatcher_id=None, authenticated=False, error=self.config_error)
        if not self.enabled():
            return AuthContext(dispatcher_id=None, authenticated=False)
        if not api_key:
            return AuthContext(dispatcher_id=None, authenticated=False, error="API_KEY_REQUIRED")
        dispatcher_id = self.api_key_to_dispatcher.get(api_key)
        if not dispatcher_id:
            return AuthContext(dispatcher_id=None, authenticated=False, error="API_KEY_INVALID")
        return AuthContext(dispatcher_id=dispatcher_id, authenticated=True)
