"""Bearer token authentication for the diagnostics server over HTTP.

Two pre-shared tokens are recognised. The admin token may read metrics
and run the maintenance tools that discard data (``clear_caches``,
``clear_old_metrics``); the optional read token may only read. Over stdio
there is no token at all and every tool is available.
"""

import hmac

from fastmcp.server.auth import AccessToken, TokenVerifier

READ_SCOPE = "diagnostics:read"
ADMIN_SCOPE = "diagnostics:admin"

_MIN_TOKEN_LENGTH = 32


def _check_length(label: str, token: str | None) -> str:
    if not token or len(token) < _MIN_TOKEN_LENGTH:
        raise ValueError(
            f"{label} must be at least {_MIN_TOKEN_LENGTH} characters, "
            f"got {len(token) if token else 0}"
        )
    return token


def has_admin_scope(access: AccessToken | None) -> bool:
    """True when *access* may run maintenance tools.

    ``None`` means the request did not come through bearer auth (stdio or
    in-process), which is trusted.
    """
    return access is None or ADMIN_SCOPE in access.scopes


class BearerTokenVerifier(TokenVerifier):
    """Map the admin and read tokens to their diagnostics scopes.

    Args:
        admin_token: Grants read and admin scopes (>= 32 characters).
        read_token: Optional token granting the read scope only.

    Raises:
        ValueError: If a token is shorter than 32 characters or both tokens
            are the same.
    """

    def __init__(self, admin_token: str, read_token: str | None = None) -> None:
        super().__init__()
        self._grants: list[tuple[str, str, list[str]]] = [
            (_check_length("MCP auth token", admin_token), "admin", [READ_SCOPE, ADMIN_SCOPE]),
        ]
        if read_token is not None:
            _check_length("MCP read token", read_token)
            if hmac.compare_digest(read_token, admin_token):
                raise ValueError("MCP read token must differ from the admin token")
            self._grants.append((read_token, "reader", [READ_SCOPE]))

    async def verify_token(self, token: str) -> AccessToken | None:
        """Return the ``AccessToken`` for a known token, else ``None``."""
        for expected, client_id, scopes in self._grants:
            if hmac.compare_digest(token, expected):
                return AccessToken(token=token, client_id=client_id, scopes=list(scopes))
        return None
