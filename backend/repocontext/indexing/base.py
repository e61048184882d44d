"""Upstream source interface."""

from __future__ import annotations

import dataclasses
import datetime as _dt
from typing import Any, Dict, List, Optional, Set, Tuple

from ..core.models import CorpusSnapshot, RecordKind


@dataclasses.dataclass
class RawItem:
    """A collected `(id, kind, text, attributes)` tuple awaiting its vector."""

    id: str
    kind: RecordKind
    text: str
    attributes: Dict[str, Any]
    created_at: Optional[_dt.datetime] = None


class UpstreamSource:
    """Abstract base class for collectors feeding the merge pipeline."""

    name = "source"

    def observe(self, previous: CorpusSnapshot) -> None:
        """See the previous snapshot before fetching. Default: ignore it."""

    def fetch(self, since: Optional[str]) -> Tuple[List[RawItem], Optional[str]]:
        """Return items newer than watermark `since` and the new watermark.

        Raises:
            SourceError: If the upstream cannot be read.
        """
        raise NotImplementedError

    def retry_mark(
        self,
        since: Optional[str],
        mark: Optional[str],
        fetched: List[RawItem],
        failed: Set[str],
    ) -> Optional[str]:
        """Watermark to store when some fetched items (ids in `failed`) were not embedded.

        It must make the next `fetch` return those items again. Default: keep `since`.
        """
        return since
