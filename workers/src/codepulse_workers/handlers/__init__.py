# Import all handlers so they register themselves.
from . import activity_ingest  # noqa: F401
from . import coding_analysis  # noqa: F401
