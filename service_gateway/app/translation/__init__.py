"""
Translation Engine.

Converts inbound dialect requests into the canonical upstream request and
upstream responses (whole or streamed) back into the inbound dialect,
including dialect-native error envelopes.
"""

from .envelopes import error_body, render_error
from .models import CanonicalRequest, Dialect, Message, Role
from .request import merge_preamble, translate_request
from .response import translate_response
from .stream import StreamEvent, create_stream_translator, translate_stream

__all__ = [
    "CanonicalRequest",
    "Dialect",
    "Message",
    "Role",
    "StreamEvent",
    "create_stream_translator",
    "error_body",
    "merge_preamble",
    "render_error",
    "translate_request",
    "translate_response",
    "translate_stream",
]
