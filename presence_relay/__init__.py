"""Gather presence relay.

Watches join/leave activity in a Gather space and forwards it to a webhook
and/or a spreadsheet append log.
"""

__version__ = "0.3.0"
