class BillingError(Exception):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "code": self.status_code}


class MalformedEvent(BillingError):
    status_code = 400
    code = "malformed_event"


class EventInFlight(BillingError):
    """Another delivery of the same Stripe event currently owns the row."""

    status_code = 409
    code = "event_in_flight"

    def __init__(self, stripe_event_id: str):
        self.stripe_event_id = stripe_event_id
        super().__init__(f"Event {stripe_event_id} is already being processed")


class UserNotFound(BillingError):
    status_code = 404
    code = "user_not_found"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class NoBillingCustomer(BillingError):
    status_code = 404
    code = "no_billing_customer"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("No billing profile for this user")
