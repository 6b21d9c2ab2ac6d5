"""
voxrelay - voice interaction orchestration core.

Turns transcribed utterances into requests for a remote reasoning gateway
and speaks the answers back, either while the user waits or later from a
durable inbox.
"""

__version__ = "0.1.0"
