from typing import Optional


class ShopError(Exception):
    """Base for every failure the API reports to a client."""

    status_code = 500
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {"message": self.message}


class ConfigurationError(RuntimeError):
    """Raised while building the app when required settings are missing."""


class InvalidArgument(ShopError):
    status_code = 400
    default_message = "Invalid request."


class InvalidUserID(InvalidArgument):
    default_message = "User identifier is not valid."


class NotFound(ShopError):
    status_code = 404
    default_message = "Not found."


class ProductNotFound(NotFound):
    default_message = "Product not found."


class UserNotFound(NotFound):
    default_message = "User not found."


class InvalidCredentials(ShopError):
    status_code = 401
    default_message = "Invalid credentials"


class AuthError(ShopError):
    status_code = 401
    default_message = "The token is invalid."


class MissingToken(AuthError):
    default_message = "No authorization header provided."


class InvalidSignature(AuthError):
    default_message = "The token signature is invalid."


class TokenExpired(AuthError):
    default_message = "The token has expired."


class MalformedToken(AuthError):
    default_message = "The token could not be decoded."


class PersistenceFailure(ShopError):
    status_code = 500
    default_message = "Unable to save your changes. Please try again."


class CheckoutFailure(ShopError):
    status_code = 500
    default_message = "Unable to complete checkout. Please try again."
