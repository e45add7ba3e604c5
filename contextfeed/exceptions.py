"""
Error taxonomy for the feed ranking pipeline.

Only InvalidFeedRequest is meant to reach callers; everything else is
recovered inside the pipeline (exclusion, neutral values or the recency
fallback feed).
"""


class FeedError(Exception):
    """Base class for feed pipeline errors."""


class UpstreamUnavailable(FeedError):
    """A feature, prediction or cache backend failed for one call."""


class RankingPipelineError(FeedError):
    """The ranking pass as a whole cannot produce a result."""


class MalformedContext(FeedError):
    """A request signal (location, session marker) could not be parsed."""


class InvalidFeedRequest(FeedError, ValueError):
    """Paging or count arguments are out of their valid domain."""
