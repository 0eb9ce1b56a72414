"""
Generated typing artifact listing every known entitlement.
"""

import asyncio
from pathlib import Path
from typing import Iterable, List, Optional

from shared.logging import get_logger
from ..rules.models import Entitlement

HEADER = "# Generated by service_permissions.app.catalog; do not edit.\n"


def _literal(values: List[str]) -> str:
    if not values:
        return "str"
    return "Literal[\n" + "".join(f"    {value!r},\n" for value in values) + "]"


def render_entitlement_types(entitlements: Iterable[Entitlement]) -> str:
    """Render `Literal` aliases for entitlement names, groups and features."""
    entitlements = list(entitlements)
    names = sorted({e.name for e in entitlements})
    groups = sorted({e.group for e in entitlements})
    features = sorted({f for e in entitlements for f in e.features})

    return (
        HEADER
        + "\nfrom typing import Literal\n\n"
        + f"EntitlementName = {_literal(names)}\n\n"
        + f"EntitlementGroup = {_literal(groups)}\n\n"
        + f"Feature = {_literal(features)}\n"
    )


class EntitlementTypesWriter:
    """Writes the generated aliases; failures are logged, never raised."""

    def __init__(self, path: Optional[str]):
        self.path = Path(path) if path else None
        self.logger = get_logger("permissions.catalog.artifact")

    @property
    def enabled(self) -> bool:
        return self.path is not None

    async def write(self, entitlements: Iterable[Entitlement]) -> bool:
        if self.path is None:
            return False

        content = render_entitlement_types(entitlements)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_file, content)
        except OSError as e:
            self.logger.error("Failed to write entitlement types", path=str(self.path), error=str(e))
            return False

        self.logger.debug("Entitlement types written", path=str(self.path))
        return True

    def _write_file(self, content: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(self.path)
