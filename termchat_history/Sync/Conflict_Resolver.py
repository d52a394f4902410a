# Conflict_Resolver.py
# Description: Deterministic last-writer-wins resolution between two versions of a history record.
#
# Imports
from dataclasses import dataclass
#
# Local Imports
from ..models import HistoryRecord
#
########################################################################################################################
#
# Functions:


def _ordering_key(record: HistoryRecord) -> tuple:
    # updated_at, then the machine that wrote it last, then uuid, then content digest.
    return (record.updated_at, record.machine_id, record.uuid, record.content_digest())


def resolve(a: HistoryRecord, b: HistoryRecord) -> HistoryRecord:
    """
    Picks the winning version of a record. Commutative: resolve(a, b) and resolve(b, a) return the
    same version on every machine, whichever copy arrived first.
    """
    return a if _ordering_key(a) >= _ordering_key(b) else b


@dataclass(frozen=True)
class ConflictResolution:
    winner: HistoryRecord
    loser: HistoryRecord
    local_won: bool
    conflicted: bool


def resolve_conflict(local: HistoryRecord, remote: HistoryRecord) -> ConflictResolution:
    """
    Resolves a local copy against a remote one. `conflicted` is False when both carry the same
    observable content, in which case the local copy is reported as the winner.
    """
    if not local.differs_from(remote):
        return ConflictResolution(winner=local, loser=remote, local_won=True, conflicted=False)
    winner = resolve(local, remote)
    local_won = winner is local
    return ConflictResolution(
        winner=winner,
        loser=remote if local_won else local,
        local_won=local_won,
        conflicted=True,
    )

#
# End of Conflict_Resolver.py
########################################################################################################################
