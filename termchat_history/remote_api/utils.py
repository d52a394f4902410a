# termchat_history/remote_api/utils.py
#
#
# Imports
import base64
from typing import Any, Dict, List, Optional, Sequence
#
# Local Imports
from .schemas import StatementResult
#
#######################################################################################################################
#
# Functions:

def normalize_remote_url(url: str) -> str:
    """
    Turns a database URL into the HTTP base URL of its pipeline endpoint.
    `libsql://db-org.turso.io` becomes `https://db-org.turso.io`; http(s) URLs are kept.
    """
    url = url.strip().rstrip('/')
    if url.startswith("libsql://"):
        url = "https://" + url[len("libsql://"):]
    elif "://" not in url:
        url = "https://" + url
    return url


def encode_value(value: Any) -> Dict[str, Any]:
    """Encodes a Python value as a pipeline statement argument."""
    if value is None:
        return {"type": "null"}
    if isinstance(value, bool):
        return {"type": "integer", "value": "1" if value else "0"}
    if isinstance(value, int):
        # Integers travel as strings to keep 64-bit precision.
        return {"type": "integer", "value": str(value)}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    if isinstance(value, (bytes, bytearray)):
        return {"type": "blob", "base64": base64.b64encode(bytes(value)).decode("ascii")}
    return {"type": "text", "value": str(value)}


def decode_value(cell: Dict[str, Any]) -> Any:
    value_type = cell.get("type")
    if value_type == "null":
        return None
    if value_type == "integer":
        return int(cell["value"])
    if value_type == "float":
        return float(cell["value"])
    if value_type == "blob":
        return base64.b64decode(cell.get("base64", ""))
    return cell.get("value")


def build_execute(sql: str, args: Optional[Sequence[Any]] = None) -> Dict[str, Any]:
    stmt: Dict[str, Any] = {"sql": sql}
    if args:
        stmt["args"] = [encode_value(arg) for arg in args]
    return {"type": "execute", "stmt": stmt}


def rows_as_dicts(result: StatementResult) -> List[Dict[str, Any]]:
    """Decodes a statement result into one dict per row, keyed by column name."""
    names = [col.name or f"col{i}" for i, col in enumerate(result.cols)]
    return [{name: decode_value(cell) for name, cell in zip(names, row)} for row in result.rows]

#
# End of termchat_history/remote_api/utils.py
########################################################################################################################
