from .controller import PageFilter, TempRewrite, open_sink, open_source, parse_page_list
from .dataset import END_OF_STREAM, PAGE_TRUNCATED, READ_ERROR, Dataset

__all__ = [
    "Dataset",
    "END_OF_STREAM",
    "PAGE_TRUNCATED",
    "PageFilter",
    "READ_ERROR",
    "TempRewrite",
    "open_sink",
    "open_source",
    "parse_page_list",
]
