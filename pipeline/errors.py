"""
Exceptions raised by the batch pipeline.

Configuration-class errors are raised before any job is created.
Per-item errors are recorded on the job and never escape a batch loop.
"""


class PipelineError(Exception):
    """Base exception for pipeline errors."""
    pass


class ConfigurationError(PipelineError):
    """A run cannot start because something required is missing."""
    pass


class FolderNotFoundError(ConfigurationError):
    """The project folder does not exist or cannot be read."""
    pass


class AnalyzerNotConfiguredError(ConfigurationError):
    """No analyzer backend is available (e.g. missing API key)."""
    pass


class ProjectNotFoundError(PipelineError):
    """The requested project does not exist."""
    pass


class ImageNotFoundError(PipelineError):
    """The requested image record does not exist."""
    pass


class NoTargetsError(PipelineError):
    """There is nothing for the requested run to process."""
    pass


class ProjectBusyError(PipelineError):
    """Another mutating run holds the project lock."""
    pass


class NameCollisionError(PipelineError):
    """No free filename was found within the probe limit."""
    pass


class AnalyzerError(Exception):
    """The external analyzer failed for an image."""
    pass


class ModelUnavailableError(AnalyzerError):
    """The requested model does not exist or is not enabled for this key."""
    pass


class BlobStoreError(Exception):
    """A blob store operation failed."""
    pass
