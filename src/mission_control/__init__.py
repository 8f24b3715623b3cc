"""Mission control job core: claim, execute, self-heal and route agent jobs."""

__version__ = "0.1.0"
