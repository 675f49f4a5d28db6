from __future__ import annotations
from typing import Optional

from slixmpp.jid import JID, InvalidJID

# ========================================
#           JID HELPERS
# ========================================
"""
Address helpers for settings validation and sender matching. A JID has the
form [local@]domain[/resource]; the bare JID is everything before the
resource. Parsing and normalisation (case folding, IDNA) are slixmpp's.
"""

def is_jid(s: Optional[str]) -> bool:
    """
    returns True if slixmpp accepts the string as a JID, otherwise False.
    """
    if not s:
        return False
    try:
        JID(s)
    except InvalidJID:
        return False
    return True

def bare_jid(jid: str) -> str:
    """
    Strip the resource part.

    - 'queue@auth.example.com/focus' → 'queue@auth.example.com'
    - 'queue@auth.example.com'       → unchanged
    """
    return JID(jid).bare

def same_bare_jid(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two JIDs ignoring their resources.
    Invalid or missing addresses never match.
    """
    if not a or not b:
        return False
    try:
        return JID(a).bare == JID(b).bare
    except InvalidJID:
        return False
