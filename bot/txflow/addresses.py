import re

ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")
EXAMPLE_ADDRESS = "0xD16101f623B17284AfCd7F28dE6e3B29D2646be0"


def is_valid(address) -> bool:
    """Syntax check for a ledger account: 0x followed by exactly 40 hex chars."""
    if not isinstance(address, str):
        return False
    return ADDRESS_RE.fullmatch(address) is not None
