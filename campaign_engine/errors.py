"""
Exception taxonomy for the campaign engine.

Client-input problems (ValidationError, NotFoundError, Forbidden,
InvalidStateError, ConcurrentModificationError, CapacityExceededError)
propagate to the caller. GenerationFailure and DispatchFailure are
recovered inside the coordinator and executor and only show up as
recorded errors.
"""


class CampaignError(Exception):
    """Base class for every engine error."""


class ValidationError(CampaignError):
    pass


class NotFoundError(CampaignError):
    pass


class Forbidden(CampaignError):
    """The target entity belongs to a different organization."""


class InvalidStateError(CampaignError):
    pass


class ConcurrentModificationError(CampaignError):
    pass


class CapacityExceededError(CampaignError):
    def __init__(self, message: str, unscheduled: int = 0):
        super().__init__(message)
        self.unscheduled = unscheduled


class GenerationFailure(CampaignError):
    def __init__(self, donor_id, reason: str):
        super().__init__(f"donor {donor_id}: {reason}")
        self.donor_id = donor_id
        self.reason = reason


class DispatchFailure(CampaignError):
    def __init__(self, message: str, code: int = None):
        super().__init__(message)
        self.code = code


def ensure_owned(entity, organization_id: str, kind: str):
    """Raise NotFoundError / Forbidden before any mutation touches ``entity``."""
    if entity is None:
        raise NotFoundError(f"{kind} not found")
    if entity.get("organization_id") != organization_id:
        raise Forbidden(f"{kind} belongs to a different organization")
    return entity
