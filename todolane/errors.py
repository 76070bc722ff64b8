class TodoLaneError(Exception):
    """Base class for errors raised by the todolane services."""


class InvalidInput(TodoLaneError):
    """The caller supplied a value that can never succeed (bad date, empty payload...)."""


class NotFound(TodoLaneError):
    """A referenced project, todo or feed subscription does not exist."""


class Conflict(TodoLaneError):
    """The request collides with existing data, e.g. a feed URL subscribed twice."""


class FeedError(TodoLaneError):
    """A single feed subscription could not be synced this round."""


class FeedFetchError(FeedError):
    pass


class FeedParseError(FeedError):
    pass
