"""
Engine error taxonomy.

Every error carries the operation that failed and the (type, id) target it
was working on, so the HTTP layer can render a message without parsing
strings.

- NotFoundError: a referenced Link/Comment/User does not exist
- ValidationError: bad input, nothing was written
- ConflictError: lost a race on a Vote row, retried inside cast_vote
- StoreError: the database failed, never retried here
"""


class LinkEngineError(Exception):
    def __init__(self, message: str, operation: str = None, target: tuple = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.target = target

    def __str__(self):
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.target:
            context.append("target={}:{}".format(*self.target))
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class NotFoundError(LinkEngineError):
    pass


class ValidationError(LinkEngineError):
    pass


class ConflictError(LinkEngineError):
    pass


class StoreError(LinkEngineError):
    pass
