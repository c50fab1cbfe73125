from .header import emit_header, parse_header, read_header, write_header

__all__ = [
    "emit_header",
    "parse_header",
    "read_header",
    "write_header",
]
