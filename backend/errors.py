# backend/errors.py


class BrainPlayError(Exception):
    """Base class for game-session failures."""


class GenerationFailure(BrainPlayError):
    """Puzzle generation failed or returned nothing usable. Aborts the round."""


class VerificationFailure(BrainPlayError):
    """A single guess could not be checked."""


class RevealFailure(BrainPlayError):
    """Authoritative answers could not be fetched."""


class InvalidTransition(BrainPlayError):
    """A UI action arrived in a phase that does not accept it."""
