class PaymentError(Exception):
    """Base class for every payment failure raised by this service."""


class AssemblyError(PaymentError):
    """The KHQR payload could not be built from the request."""


class FieldTooLong(AssemblyError):
    def __init__(self, tag, length):
        self.tag = tag
        self.length = length
        super().__init__(f"Tag {tag} value is {length} bytes, the length slot holds at most 99")


class GatewayError(PaymentError):
    """The payment gateway answered, but not with something we can use."""

    def __init__(self, code, message):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class GatewayUnreachable(GatewayError):
    def __init__(self, message):
        super().__init__("UNREACHABLE", message)


class InvalidSignature(PaymentError):
    pass


class UnknownReference(PaymentError):
    def __init__(self, reference):
        self.reference = reference
        super().__init__(f"No order matches reference {reference!r}")
