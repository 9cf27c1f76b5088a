"""Ballchasing plugin package – source and parsers.

* :class:`BallchasingSource` – lists groups and replays from the ballchasing.com REST API
* :mod:`.parser`             – converts listing JSON -> :class:`~core.models.Group` / :class:`~core.models.Record`
"""

from .fetcher import API_ROOT, BallchasingSource   # noqa: F401
from .parser import is_ingestible, parse_time      # noqa: F401
