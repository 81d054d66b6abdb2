"""
Exception hierarchy for the Confidential Weather Aggregator.

Every rejected operation raises one of these synchronously; callers can
catch the category (validation, authorization, state, authenticity,
invariant) or the specific failure.
"""


class AggregatorError(Exception):
    """Base class for all aggregator errors."""


# ============ Validation ============

class ValidationError(AggregatorError, ValueError):
    """Input was rejected; the caller must fix it before retrying."""


class UnknownStationError(ValidationError):
    """Caller is not a registered station."""


class InactiveStationError(ValidationError):
    """Station exists but has been deactivated."""


class DuplicateSubmissionError(ValidationError):
    """Station already contributed in the current period."""


class TimeWindowClosedError(ValidationError):
    """Operation attempted outside its allowed UTC hours."""


class InvalidStationAddressError(ValidationError):
    """Station address is malformed or the zero address."""


class StationAlreadyRegisteredError(ValidationError):
    """Address is already registered as a station."""


class StationAlreadyInactiveError(ValidationError):
    """Station was already deactivated."""


class FieldOutOfRangeError(ValidationError):
    """A weather reading is outside its physical bound."""

    field_name = "value"

    def __init__(self, value, maximum: int):
        self.value = value
        self.maximum = maximum
        super().__init__(
            f"Invalid {self.field_name}: {value!r} (expected integer in 0..{maximum})"
        )


class InvalidTemperatureError(FieldOutOfRangeError):
    field_name = "temperature"


class InvalidHumidityError(FieldOutOfRangeError):
    field_name = "humidity"


class InvalidPressureError(FieldOutOfRangeError):
    field_name = "pressure"


class InvalidWindSpeedError(FieldOutOfRangeError):
    field_name = "wind speed"


# ============ Authorization ============

class UnauthorizedError(AggregatorError, PermissionError):
    """Caller lacks the role required for the operation."""


# ============ State ============

class StateError(AggregatorError):
    """Operation does not fit the current protocol state."""


class InvalidForecastStateError(StateError):
    """Forecast record is not in the status the operation requires."""


class InsufficientParticipationError(StateError):
    """Fewer stations contributed than the minimum threshold."""

    def __init__(self, participants: int, minimum: int):
        self.participants = participants
        self.minimum = minimum
        super().__init__(
            f"Need minimum {minimum} stations, got {participants}"
        )


class ReentrancyError(StateError):
    """A guarded entry point was entered while another was running."""


# ============ Authenticity / replay ============

class AuthenticityError(AggregatorError):
    """Decryption result could not be trusted."""


class InvalidProofError(AuthenticityError):
    """Proof does not attest the cleartexts for the request id."""


class ReplayedRequestError(AuthenticityError):
    """Request id was already processed."""


# ============ Invariants ============

class InvariantError(AggregatorError):
    """An internal invariant was violated."""


class InvalidDivisorError(InvariantError):
    """Privacy divisor evaluated to zero."""
