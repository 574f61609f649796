class GranterError(Exception):
    """Base for errors that are shown to the user."""

    status_code = 400
    default_message = "Something went wrong."

    def __init__(self, message: str | None = None) -> None:
        self.message = self.default_message if message is None else message
        super().__init__(self.message)


class NotAuthenticated(GranterError):
    status_code = 401
    default_message = "Sign in to manage recipes."


class RecipeNotFound(GranterError):
    status_code = 404
    default_message = "Recipe not found."


class ValidationFailed(GranterError):
    status_code = 422
    default_message = "Recipe is not valid."

    def __init__(self, message: str | None = None, *, missing: list[str] | None = None):
        self.missing = [] if missing is None else missing
        super().__init__(message)


class RecipeLocked(ValidationFailed):
    status_code = 409
    default_message = (
        "This recipe is locked because it has generated output. Clone it to edit."
    )


class CredentialError(GranterError):
    def __init__(self, provider: str, message: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class MissingCredential(CredentialError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            provider, f"{provider} API key missing. Add it in Settings -> API Keys."
        )


class InvalidCredential(CredentialError):
    pass


class UnsupportedModel(GranterError):
    def __init__(self, model_type: str) -> None:
        self.model_type = model_type
        super().__init__(f"Unsupported model: {model_type}")


class ProviderRequestFailed(GranterError):
    status_code = 502

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(
            f"{provider} request failed. Check your model and API key, then try again."
        )
