"""Trustgate: the security trust boundary for a conversational agent platform.

Inbound content screening, outbound redaction, skill verification, an
encrypted credential vault and device challenge-response authentication.
"""

__version__ = "0.1.0"
