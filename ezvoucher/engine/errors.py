class AutomationError(Exception):
    """Base class for every failure raised by the automation core."""
    pass


class ConfigurationError(AutomationError):
    """Raised before any browser action when required settings are missing."""
    pass


class ConnectivityError(AutomationError):
    """Raised when the application URL stays unreachable after all retries."""

    def __init__(self, url: str, attempts: int, reason: str = ""):
        self.url = url
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Could not reach {url} after {attempts} attempts. "
            "Check the internet connection or VPN."
            + (f" ({reason})" if reason else "")
        )


class AuthenticationError(AutomationError):
    """Raised when the login form was submitted but the application never loaded."""
    pass


class ElementNotFoundError(AutomationError):
    """Raised when every locator tier for a logical UI target is exhausted."""

    def __init__(self, target: str, tiers: list[str] | None = None):
        self.target = target
        self.tiers = list(tiers or [])
        message = f"Cannot locate {target}"
        if self.tiers:
            message += f" (tried: {', '.join(self.tiers)})"
        super().__init__(message)


class StepFailedError(AutomationError):
    """Raised when a workflow step fails and should stop execution."""
    pass


class LabelExtractionError(AutomationError):
    """Raised when a voucher filename carries no parenthesized label."""

    def __init__(self, path):
        self.path = path
        super().__init__(f"No label in parentheses found in file name: {path}")


class MacroError(AutomationError):
    """Raised by the spreadsheet transformation when the workbook cannot be processed."""
    pass
