"""Authentication negotiation for SSH connections.

The configured AuthMethod is turned into an AuthNegotiator per connection:
- which mechanisms the transport advertises
- the callbacks it invokes for each attempt

Password attempts go through the throttle so repeated failures get slower.
Public key attempts are checked directly and never throttled: a key check
cannot be brute-forced the way a password can, and delaying it would only
slow down clients that offer several keys before the right one.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Callable

import asyncssh

from termgate.config import AuthConfig, ThrottleConfig
from termgate.errors import KeyDecodeError
from termgate.pubkey import PublicKey, from_ssh_key, load_authorized_keys
from termgate.throttle import UNSET, ThrottleState, throttle

__all__ = [
    "AnonymousAuth",
    "AuthMethod",
    "AuthNegotiator",
    "PasswordAuth",
    "PasswordOrKeyAuth",
    "PublicKeyAuth",
    "auth_method_from_config",
]

logger = logging.getLogger(__name__)

PasswordCheck = Callable[[str, str], bool]
KeyCheck = Callable[[str, PublicKey], bool]


@dataclass(frozen=True)
class AnonymousAuth:
    """Anyone may connect."""

    pass


@dataclass(frozen=True)
class PasswordAuth:
    """Password authentication checked by check(username, password)."""

    check: PasswordCheck


@dataclass(frozen=True)
class PublicKeyAuth:
    """Public key authentication checked by check(username, key)."""

    check: KeyCheck


@dataclass(frozen=True)
class PasswordOrKeyAuth:
    """Either a password or a public key is accepted."""

    password_check: PasswordCheck
    key_check: KeyCheck


AuthMethod = AnonymousAuth | PasswordAuth | PublicKeyAuth | PasswordOrKeyAuth


class AuthNegotiator:
    """Per-connection authentication state.

    Holds the throttle state for the connection's password attempts. Create
    one per connection; never share one between peers.

    Attributes:
        method: The configured AuthMethod.
    """

    def __init__(
        self,
        method: AuthMethod,
        throttle_config: ThrottleConfig | None = None,
    ) -> None:
        """Initialize negotiator.

        Args:
            method: Configured authentication method.
            throttle_config: Backoff settings for failed passwords.
        """
        self.method = method
        self._throttle_config = throttle_config or ThrottleConfig()
        self._throttle_state: ThrottleState = UNSET

        if isinstance(method, PasswordAuth):
            self._password_check: PasswordCheck | None = method.check
            self._key_check: KeyCheck | None = None
        elif isinstance(method, PublicKeyAuth):
            self._password_check = None
            self._key_check = method.check
        elif isinstance(method, PasswordOrKeyAuth):
            self._password_check = method.password_check
            self._key_check = method.key_check
        elif isinstance(method, AnonymousAuth):
            self._password_check = None
            self._key_check = None
        else:
            raise TypeError(f"Unknown auth method: {method!r}")

    @property
    def auth_required(self) -> bool:
        """Whether peers must authenticate at all."""
        return not isinstance(self.method, AnonymousAuth)

    @property
    def password_supported(self) -> bool:
        return self._password_check is not None

    @property
    def public_key_supported(self) -> bool:
        return self._key_check is not None

    @property
    def throttle_state(self) -> ThrottleState:
        """Current backoff state for this connection."""
        return self._throttle_state

    async def check_password(self, username: str, password: str) -> bool:
        """Check a password attempt, delaying the reply on failure.

        Args:
            username: User name sent by the peer.
            password: Password sent by the peer.

        Returns:
            True if accepted. Never raises for a rejected attempt.
        """
        if self._password_check is None:
            return False

        accepted = self._call_check(self._password_check, username, password)
        accepted, self._throttle_state = await throttle(
            accepted,
            self._throttle_state,
            initial_delay_ms=self._throttle_config.initial_delay_ms,
            max_delay_ms=self._throttle_config.max_delay_ms,
        )

        if not accepted:
            logger.warning(f"Password rejected for user {username!r}")
        return accepted

    def check_public_key(self, username: str, key: PublicKey) -> bool:
        """Check a public key attempt. Not throttled.

        Args:
            username: User name sent by the peer.
            key: Decoded key offered by the peer.

        Returns:
            True if accepted.
        """
        if self._key_check is None:
            return False

        accepted = self._call_check(self._key_check, username, key)
        if not accepted:
            logger.info(f"Public key {key.algorithm} rejected for user {username!r}")
        return accepted

    def check_ssh_key(self, username: str, key: asyncssh.SSHKey) -> bool:
        """Check a key in transport form, rejecting keys that fail to decode."""
        try:
            decoded = from_ssh_key(key)
        except KeyDecodeError as e:
            logger.warning(f"Could not decode key offered by {username!r}: {e}")
            return False
        return self.check_public_key(username, decoded)

    @staticmethod
    def _call_check(check: Callable[[str, object], bool], username: str, credential) -> bool:
        """Run an embedder callback; a raising callback counts as a rejection."""
        try:
            return bool(check(username, credential))
        except Exception as e:
            logger.error(f"Authentication callback raised for {username!r}: {e}")
            return False


def auth_method_from_config(config: AuthConfig) -> AuthMethod:
    """Build an AuthMethod from the config file's auth section.

    Passwords come from config.users; keys from the config.authorized_keys
    file, accepted for any user name.

    Raises:
        KeyDecodeError: If the authorized_keys file has a malformed line.
        OSError: If the authorized_keys file cannot be read.
    """
    users = dict(config.users)

    def password_check(username: str, password: str) -> bool:
        expected = users.get(username)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode(), password.encode())

    def load_key_check() -> KeyCheck:
        keys = set(load_authorized_keys(config.authorized_keys)) if config.authorized_keys else set()

        def key_check(username: str, key: PublicKey) -> bool:
            return key in keys

        return key_check

    if config.method == "password":
        return PasswordAuth(check=password_check)
    if config.method == "public_key":
        return PublicKeyAuth(check=load_key_check())
    if config.method == "password_or_key":
        return PasswordOrKeyAuth(password_check=password_check, key_check=load_key_check())
    return AnonymousAuth()
