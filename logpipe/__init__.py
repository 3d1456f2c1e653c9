"""In-process log pipeline: decoding, ordered streams, action processing, batching, antispam, metrics and debug views."""

__version__ = "0.1.0"