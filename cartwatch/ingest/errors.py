"""Error taxonomy for browser sessions, cart scraping and SKU acquisition."""

import re
from typing import Iterable, Optional


# Messages Playwright raises once the page/context/browser underneath is gone
FATAL_SESSION_PATTERN = re.compile(
    r"Target closed|Target page, context or browser has been closed|has been closed"
    r"|Browser has been closed|Session closed|Connection closed"
    r"|Navigation failed because page crashed|Page crashed",
    re.IGNORECASE,
)


def is_fatal_session_error(error: BaseException | str | None) -> bool:
    """Return True when an error means the browser session is unusable."""
    if error is None:
        return False
    if isinstance(error, FatalSessionError):
        return True
    message = error if isinstance(error, str) else str(error)
    return bool(FATAL_SESSION_PATTERN.search(message))


class CartWatchError(Exception):
    """Base class for engine errors."""


class FatalSessionError(CartWatchError):
    """The page, context or browser for an account has gone away."""
    def __init__(self, account_id: int, reason: str):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Browser session for account {account_id} is unusable: {reason}")


class AuthChallengeError(CartWatchError):
    """The site demanded a login or a human verification step."""
    status = "CAPTCHA"

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class CaptchaRequiredError(AuthChallengeError):
    """Slider / security verification page detected."""
    status = "CAPTCHA"


class LoginRequiredError(AuthChallengeError):
    """Redirected to the login page: the stored cookies are no longer valid."""
    status = "LOCKED"


class AccountLockedError(CartWatchError):
    """Refusing to open a session for an account marked LOCKED."""
    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"Account {account_id} is locked, re-login required")


class ExtractionError(CartWatchError):
    """Cart or product page could not be parsed."""


class SkuAddError(CartWatchError):
    """Adding one SKU to the cart failed."""
    def __init__(self, message: str, sku_id: str | None = None):
        self.sku_id = sku_id
        super().__init__(message)


class OptionNotFoundError(SkuAddError):
    """No option element matched a selection on the product page."""
    def __init__(self, prop_name: str, value_name: str, sku_id: str | None = None):
        self.prop_name = prop_name
        self.value_name = value_name
        super().__init__(f"Option not found: {prop_name}={value_name}", sku_id)


class OptionDisabledError(SkuAddError):
    """The option exists but is greyed out (sold out / unavailable)."""
    def __init__(self, prop_name: str, value_name: str, sku_id: str | None = None):
        self.prop_name = prop_name
        self.value_name = value_name
        super().__init__(f"Option disabled: {prop_name}={value_name}", sku_id)


class SelectionIncompleteError(SkuAddError):
    """One or more variant dimensions are still unselected."""
    def __init__(self, missing: Iterable[str], sku_id: str | None = None):
        self.missing = list(missing)
        super().__init__(f"Selection incomplete, missing: {', '.join(self.missing)}", sku_id)


class AddToCartUnavailableError(SkuAddError):
    """Add-to-cart control missing or disabled."""


class AddToCartRejectedError(SkuAddError):
    """Clicked add-to-cart but no success signal was observed."""
    def __init__(self, reason: Optional[str], sku_id: str | None = None):
        self.reason = reason
        super().__init__(f"Add to cart not confirmed: {reason or 'no success signal'}", sku_id)
