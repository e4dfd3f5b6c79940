class ConfigurationError(Exception):
    """
    Raised when an installation refers to configuration that is missing or invalid,
    e.g. a secret that does not contain a required key.
    """


class PatchError(Exception):
    """
    Raised when a user-supplied patch cannot be applied to a generated resource.
    """


class UpdateJobFailed(Exception):
    """
    Raised when the job that verifies a new image fails.
    """
