class ReportGenerationError(Exception):
    """Base class for report generation failures."""


class ReportIOError(ReportGenerationError):
    """File system errors while writing a report."""
