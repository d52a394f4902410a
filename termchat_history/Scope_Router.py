# Scope_Router.py
# Description: Maps a requested scope onto the history tables to read or write.
#
# Imports
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from .Auth.Session_Authenticator import AuthResult
from .models import HistoryRecord, RecordScope, ScopeSelector, ScopeTarget
#
########################################################################################################################
#
# Functions:


class ScopeCapabilityError(Exception):
    """The requested scope needs a validated user and the session does not have one. No side effects."""

    def __init__(self, selector: ScopeSelector, reason: str):
        super().__init__(f"Scope '{selector.value}' is unavailable: {reason}")
        self.selector = selector
        self.reason = reason


@dataclass(frozen=True)
class ReadPlan:
    selector: ScopeSelector
    targets: Tuple[ScopeTarget, ...]


@dataclass(frozen=True)
class WriteTarget:
    scope: RecordScope
    machine_id: str
    user_id: Optional[str] = None

    @property
    def table(self) -> str:
        return self.scope.table


class ScopeRouter:
    """
    Routing is decided from the current authentication result. `user` and `hybrid` require a
    VALIDATED session; `global`, `machine` and `local` work in every mode, including OFFLINE.
    """

    def __init__(self, machine_id: str, auth_provider: Callable[[], Optional[AuthResult]]):
        self.machine_id = machine_id
        self._auth_provider = auth_provider

    def _validated_user_id(self) -> Optional[str]:
        auth = self._auth_provider()
        return auth.user_id if auth is not None and auth.is_validated else None

    def _require_user(self, selector: ScopeSelector) -> str:
        user_id = self._validated_user_id()
        if user_id is None:
            auth = self._auth_provider()
            mode = auth.mode.value if auth is not None else "unauthenticated"
            logger.debug(f"Refusing scope '{selector.value}' in auth mode '{mode}'")
            raise ScopeCapabilityError(selector, f"requires a validated user (session is {mode})")
        return user_id

    def route_read(self, selector: ScopeSelector) -> ReadPlan:
        selector = ScopeSelector(selector)
        if selector is ScopeSelector.GLOBAL:
            targets = [ScopeTarget(scope=RecordScope.GLOBAL)]
        elif selector is ScopeSelector.USER:
            targets = [ScopeTarget(scope=RecordScope.USER, user_id=self._require_user(selector))]
        elif selector is ScopeSelector.MACHINE:
            targets = [ScopeTarget(scope=RecordScope.MACHINE, machine_id=self.machine_id)]
        elif selector is ScopeSelector.LOCAL:
            targets = [ScopeTarget(scope=RecordScope.LOCAL)]
        else:
            user_id = self._require_user(selector)
            targets = [
                ScopeTarget(scope=RecordScope.GLOBAL),
                ScopeTarget(scope=RecordScope.USER, user_id=user_id),
                ScopeTarget(scope=RecordScope.MACHINE, machine_id=self.machine_id),
            ]
        return ReadPlan(selector=selector, targets=tuple(targets))

    def route_write(self, selector: ScopeSelector, record: Optional[HistoryRecord] = None) -> WriteTarget:
        """
        Picks the table a write goes to. An existing record always stays in its own scope; a new
        record submitted under `hybrid` goes to the user table.
        """
        selector = ScopeSelector(selector)
        if selector in (ScopeSelector.USER, ScopeSelector.HYBRID):
            user_id = self._require_user(selector)
            if record is not None:
                return WriteTarget(scope=record.scope, machine_id=self.machine_id, user_id=record.user_id)
            return WriteTarget(scope=RecordScope.USER, machine_id=self.machine_id, user_id=user_id)
        if record is not None:
            return WriteTarget(scope=record.scope, machine_id=self.machine_id, user_id=record.user_id)
        return WriteTarget(scope=selector.as_record_scope(), machine_id=self.machine_id,
                           user_id=self._validated_user_id())

    def pull_targets(self) -> List[ScopeTarget]:
        """Remote tables the worker pulls, with the filter that applies to each."""
        targets = [ScopeTarget(scope=RecordScope.GLOBAL)]
        user_id = self._validated_user_id()
        if user_id:
            targets.append(ScopeTarget(scope=RecordScope.USER, user_id=user_id))
        targets.append(ScopeTarget(scope=RecordScope.MACHINE, machine_id=self.machine_id))
        return targets

#
# End of Scope_Router.py
########################################################################################################################
