"""Re-entrant, file-checkpointed workflows on a batch compute cluster.

checkflow provides a Luigi-based driver that advances read mapping, chunked
variant calling and file import one pass at a time. Completion is read from the
artifacts on shared storage, so the same invocation can be repeated until every
unit of work is done.
"""

from importlib.metadata import version

__version__ = version(__package__) if __package__ else None
