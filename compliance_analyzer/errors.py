"""Error taxonomy for the compliance pipeline.

Only ``ExternalServiceUnavailable`` and ``MalformedResponse`` are raised
as exceptions, and neither escapes a pipeline run: the first marks a batch
``Failed``, the second is absorbed by the response recoverer's fallback
strategies.  An empty corpus is reported as a ``no_data`` run and a
zero-message score as None; category conflicts are warning records.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class ComplianceAnalyzerError(Exception):
    """Base class for pipeline errors."""


class ExternalServiceUnavailable(ComplianceAnalyzerError):
    """The analysis service could not be reached or kept failing after retries."""


class MalformedResponse(ComplianceAnalyzerError):
    """A recovery strategy could not turn the reply text into a JSON object."""


@dataclass(frozen=True)
class CategoryConflict:
    """A guideline was filed under more than one category.

    The first mapping wins; this record is kept for the run's warnings.
    """

    key: str
    kept: str
    ignored: str
    batch_index: Optional[int] = None

    def __str__(self) -> str:
        where = f" (batch {self.batch_index})" if self.batch_index is not None else ""
        return (
            f"CategoryConflict: {self.key!r} reported under {self.ignored!r}, "
            f"kept under {self.kept!r}{where}"
        )
