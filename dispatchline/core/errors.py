"""Domain exceptions raised by the dispatch engine."""


class DispatchError(Exception):
    """Base class for engine errors. `caller_message` is safe to speak."""

    caller_message = "I'm having trouble with our scheduling system right now. Let me have the office call you back."

    def __init__(self, message: str = "", caller_message: str = None):
        super().__init__(message or self.__class__.__name__)
        if caller_message:
            self.caller_message = caller_message


class BookingValidationError(DispatchError):
    caller_message = "I still need a few more details to book this."

    def __init__(self, missing=None, message: str = "", caller_message: str = None):
        self.missing = list(missing or [])
        if not caller_message and self.missing:
            caller_message = (
                "I still need a few more details to book this. "
                f"Let me ask you about: {', '.join(self.missing)}."
            )
        super().__init__(message or f"Invalid booking request: {self.missing}", caller_message)


class CalendarUnavailableError(DispatchError):
    caller_message = "I'm having trouble checking the calendar right now. Please try again in a moment."


class CalendarWriteError(DispatchError):
    caller_message = "I couldn't confirm that slot just now. Could we try a different time?"


class BusinessNotFoundError(DispatchError):
    caller_message = "I'm having trouble connecting to the booking system. Let me transfer you to someone who can help."
