"""Remote source providers."""

from autodeploy.providers.base import FetchError, FetchErrorKind, SourceProvider
from autodeploy.providers.github import GitHubSourceProvider

__all__ = ["FetchError", "FetchErrorKind", "GitHubSourceProvider", "SourceProvider"]
