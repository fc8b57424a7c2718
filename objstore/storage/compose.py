"""Multipart upload emulation through object composition.

Providers which can only merge a limited number of whole objects at once
assemble a final object by repeatedly composing batches of sources into
intermediate objects, which are themselves valid sources for later batches.
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol, Sequence

from objstore.common.logging import user_tag
from objstore.errors import ValidationError

logger = logging.getLogger(__name__)


class ComposeBackend(Protocol):
    def compose(self, destination: str, sources: Sequence[str]) -> None:
        """Merge ``sources``, in order, into ``destination`` (overwriting it)."""
        ...

    def delete(self, keys: Sequence[str]) -> None:
        """Delete ``keys``, ignoring those which don't exist."""
        ...


def complete(
    backend: ComposeBackend,
    destination: str,
    sources: Sequence[str],
    *,
    max_composable: int,
    new_intermediate: Callable[[], str],
) -> None:
    """Compose ``sources`` into ``destination`` in batches of at most ``max_composable``.

    While more than ``max_composable`` sources remain, the first batch is
    composed into a new intermediate object which then takes the place of the
    batch at the head of the list. Sources consumed by a successful compose are
    removed on a best-effort basis, except the destination itself, which may be
    one of the sources.
    """
    if max_composable < 2:
        raise ValueError("max_composable must be at least 2")
    if not sources:
        raise ValidationError("at least one source is required to complete a multipart upload")

    remaining = list(sources)

    while len(remaining) > max_composable:
        intermediate = new_intermediate()
        batch, remaining = remaining[:max_composable], remaining[max_composable:]

        backend.compose(intermediate, batch)

        remaining.insert(0, intermediate)
        _cleanup(backend, batch, keep={destination, *remaining})

    backend.compose(destination, remaining)

    _cleanup(backend, remaining, keep={destination})


def _cleanup(backend: ComposeBackend, consumed: Sequence[str], *, keep: set[str]) -> None:
    keys = [key for key in dict.fromkeys(consumed) if key not in keep]
    if not keys:
        return

    try:
        backend.delete(keys)
    except Exception as exc:
        logger.error(
            "Failed to cleanup intermediate keys, they should be removed manually keys=%s error=%s",
            ",".join(user_tag(key) for key in keys),
            exc,
            extra={"extra": {"keys": keys, "error": str(exc)}},
        )
