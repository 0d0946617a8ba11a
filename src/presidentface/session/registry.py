"""In-memory session registry.

Sessions and the images they hold live only in process memory. When the
registry is full the oldest session is evicted and its image dropped.
"""

from __future__ import annotations

import logging
import random
import uuid
from collections import OrderedDict
from typing import TYPE_CHECKING

from presidentface.analysis.commentary import CommentarySelector
from presidentface.errors import SessionNotFoundError
from presidentface.session.pipeline import AcquisitionPipeline
from presidentface.session.state_machine import Session

if TYPE_CHECKING:
    from presidentface.analysis.types import CategoryConfig
    from presidentface.ml.gateway import ClassifierGateway
    from presidentface.ml.inference import InferencePool
    from presidentface.ml.preprocessing import ImageDecoder

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Creates sessions that share one gateway and look them up by id."""

    def __init__(
        self,
        gateway: ClassifierGateway,
        decoder: ImageDecoder,
        categories: CategoryConfig,
        pool: InferencePool,
        *,
        max_sessions: int = 1024,
        top_k: int = 3,
        commentary_seed: int | None = None,
    ) -> None:
        self._gateway = gateway
        self._decoder = decoder
        self._categories = categories
        self._pool = pool
        self._max_sessions = max_sessions
        self._top_k = top_k
        self._rng = random.Random(commentary_seed)  # noqa: S311
        self._sessions: OrderedDict[str, Session] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def new_pipeline(self) -> AcquisitionPipeline:
        return AcquisitionPipeline(
            gateway=self._gateway,
            decoder=self._decoder,
            categories=self._categories,
            commentary=CommentarySelector(rng=self._rng),
            pool=self._pool,
            top_k=self._top_k,
        )

    def create(self) -> tuple[str, Session]:
        """Register a new session in MODEL_LOADING; the caller starts it."""
        while len(self._sessions) >= self._max_sessions:
            evicted_id, evicted = self._sessions.popitem(last=False)
            evicted.close()
            logger.info("Evicted session %s (registry full)", evicted_id)

        session_id = uuid.uuid4().hex
        session = Session(pipeline=self.new_pipeline(), gateway=self._gateway)
        self._sessions[session_id] = session
        return session_id, session

    def get(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"Unknown session: {session_id}") from None

    def delete(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        session.close()

    def clear(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()
