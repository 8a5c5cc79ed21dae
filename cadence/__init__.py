"""
Cadence - Streaming chat delivery

Turns an incremental text stream from a generative model into
well-formed, human-paced chat messages, with tool-call handoff
and recovery from stalled or empty responses.
"""

__version__ = "0.1.0"
__author__ = "Cadence Team"
