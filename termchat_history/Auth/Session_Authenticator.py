# Session_Authenticator.py
# Description: Time-boxed session start against the remote store, with graceful offline degradation.
#
"""
Session_Authenticator.py
------------------------

Decides, once per session, what the history layer may do:

    UNSTARTED -> CONNECTING -> VALIDATED        remote reachable, identity is an active user
                            -> USER_NOT_FOUND   remote reachable, identity unknown or inactive
                            -> ANONYMOUS        remote reachable, no identity requested
                            -> OFFLINE          no configuration, unreachable, timed out or rejected

Connecting, registering this machine and looking the user up all run in a helper thread under one
hard deadline (`connect_timeout_ms`), so a slow network never stalls the interactive loop longer
than that.
"""
# Imports
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Optional
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from ..config import SyncConfig
from ..DB.History_Cache_DB import HistoryCacheDB
from ..models import User
from ..remote_api.client import RemoteStoreClient
from ..remote_api.exceptions import PermanentRemoteError, RemoteStoreError, TransientRemoteError
from .Machine_Identity import MachineIdentity
#
########################################################################################################################
#
# Functions:


class UserNotFoundError(Exception):
    """The requested identity is not an active user of the remote store. Not retried."""

    def __init__(self, username: str):
        super().__init__(f"User '{username}' not found or inactive")
        self.username = username


class AuthState(str, Enum):
    UNSTARTED = "unstarted"
    CONNECTING = "connecting"
    VALIDATED = "validated"
    USER_NOT_FOUND = "user_not_found"
    ANONYMOUS = "anonymous"
    OFFLINE = "offline"


class AuthMode(str, Enum):
    """Terminal outcomes of a session start."""
    VALIDATED = "validated"
    USER_NOT_FOUND = "user_not_found"
    ANONYMOUS = "anonymous"
    OFFLINE = "offline"


@dataclass(frozen=True)
class AuthResult:
    mode: AuthMode
    user: Optional[User] = None
    username: Optional[str] = None
    reason: Optional[str] = None

    def __post_init__(self):
        if (self.mode is AuthMode.VALIDATED) != (self.user is not None):
            raise ValueError("A user is carried by, and only by, a validated result")
        if self.mode is AuthMode.USER_NOT_FOUND and not self.username:
            raise ValueError("user_not_found results must name the username")

    @classmethod
    def validated(cls, user: User) -> "AuthResult":
        return cls(mode=AuthMode.VALIDATED, user=user, username=user.username)

    @classmethod
    def user_not_found(cls, username: str) -> "AuthResult":
        return cls(mode=AuthMode.USER_NOT_FOUND, username=username)

    @classmethod
    def anonymous(cls) -> "AuthResult":
        return cls(mode=AuthMode.ANONYMOUS)

    @classmethod
    def offline(cls, reason: str, username: Optional[str] = None) -> "AuthResult":
        return cls(mode=AuthMode.OFFLINE, username=username, reason=reason)

    @property
    def is_validated(self) -> bool:
        return self.mode is AuthMode.VALIDATED

    @property
    def is_connected(self) -> bool:
        return self.mode is not AuthMode.OFFLINE

    @property
    def user_id(self) -> Optional[str]:
        return self.user.user_id if self.user else None

    @property
    def error(self) -> Optional[UserNotFoundError]:
        if self.mode is AuthMode.USER_NOT_FOUND:
            return UserNotFoundError(self.username)
        return None


class SessionAuthenticator:
    def __init__(self, config: SyncConfig, cache: HistoryCacheDB, machine_identity: MachineIdentity,
                 client: Optional[RemoteStoreClient] = None):
        self.config = config
        self.cache = cache
        self.machine_identity = machine_identity
        self.client = client
        self._lock = threading.Lock()
        self._state = AuthState.UNSTARTED
        self._result: Optional[AuthResult] = None

    @property
    def state(self) -> AuthState:
        with self._lock:
            return self._state

    @property
    def result(self) -> Optional[AuthResult]:
        with self._lock:
            return self._result

    def _finish(self, result: AuthResult) -> AuthResult:
        with self._lock:
            self._state = AuthState(result.mode.value)
            self._result = result
        if result.mode is AuthMode.OFFLINE:
            logger.warning(f"History sync running offline: {result.reason}")
        else:
            logger.info(f"Session authenticated: {result.mode.value}"
                        + (f" as '{result.username}'" if result.username else ""))
        return result

    def authenticate(self, identity: Optional[str] = None) -> AuthResult:
        """
        Starts (or restarts) the session. Never raises for remote problems: those yield OFFLINE.

        Raises:
            LocalStorageFailure: If this machine or a validated user cannot be cached locally.
        """
        with self._lock:
            self._state = AuthState.CONNECTING
        machine = self.machine_identity.describe()
        self.cache.cache_machine(machine)

        if self.config.offline_only or self.client is None:
            return self._finish(AuthResult.offline("remote store not configured", username=identity))

        timeout_s = self.config.connect_timeout_ms / 1000.0
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="history-auth")
        try:
            future = executor.submit(self._connect_and_lookup, identity)
            try:
                result = future.result(timeout=timeout_s)
            except FutureTimeoutError:
                future.cancel()
                return self._finish(AuthResult.offline(
                    f"remote store did not answer within {self.config.connect_timeout_ms} ms", username=identity))
            except RemoteStoreError as e:
                return self._finish(AuthResult.offline(f"{type(e).__name__}: {e}", username=identity))
        finally:
            executor.shutdown(wait=False)

        if result.user is not None:
            self.cache.cache_user(result.user)
        return self._finish(result)

    def _connect_and_lookup(self, identity: Optional[str]) -> AuthResult:
        self.client.ping()
        if self.config.ensure_remote_schema:
            self.client.ensure_schema()
        try:
            self.client.register_machine(self.machine_identity.describe())
        except (TransientRemoteError, PermanentRemoteError) as e:
            logger.warning(f"Machine registration failed, continuing: {e}")

        if not identity:
            return AuthResult.anonymous()
        user = self.client.lookup_user(identity)
        if user is None:
            return AuthResult.user_not_found(identity)
        return AuthResult.validated(user)

#
# End of Session_Authenticator.py
########################################################################################################################
