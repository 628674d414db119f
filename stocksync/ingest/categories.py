"""Best-effort category name resolution for reconciled items."""

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksync.context import Clock, utcnow
from stocksync.db.models import Category
from stocksync.db.session import dialect_insert
from stocksync.ingest.base import CatalogSource

logger = logging.getLogger(__name__)

# Frequent categories resolved without touching the API
STATIC_CATEGORY_NAMES: dict[str, str] = {
    "MLA1055": "Celulares y Teléfonos",
    "MLA1045": "Notebooks",
    "MLA1042": "PC de Escritorio",
    "MLA3697": "Monitores",
    "MLA30756": "Memoria RAM",
    "MLA30788": "Discos Duros",
    "MLA30789": "Discos SSD",
    "MLA372015": "Tarjetas de Video",
    "MLA380663": "Teclados",
    "MLA407128": "Tablets",
    "MLA411422": "Consolas",
    "MLA413985": "Routers",
    "MLA417042": "Gabinetes",
    "MLA429387": "Procesadores",
    "MLA431208": "Mouses",
    "MLA60635": "Smartwatches",
    "MLA69930": "Televisores",
    "MLA91758": "Auriculares",
    "MLM1055": "Celulares y Smartphones",
    "MLM1652": "Laptops",
    "MLM438566": "Consolas",
    "MLM82070": "Tablets",
    "MLM1714": "Monitores",
    "MLB1055": "Celulares e Smartphones",
    "MLB1652": "Notebooks",
    "MLC1055": "Celulares y Smartphones",
    "MCO1055": "Celulares y Teléfonos",
}


class CategoryResolver:
    """
    Resolve category names: static table, then the categories cache, then
    a bounded number of remote lookups.

    Runs after the page's product writes are committed and never raises.
    A category whose lookup fails is not cached, so the next page or
    webhook that carries it tries again.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: CatalogSource,
        remote_limit: int = 10,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.source = source
        self.remote_limit = remote_limit
        self.clock = clock

    async def resolve(self, category_ids: Iterable[Optional[str]]) -> dict[str, str]:
        """
        Resolve and cache names for the given category ids.

        Returns:
            Mapping of category id to name for every id that could be resolved
        """
        wanted = sorted({cid for cid in category_ids if cid})
        if not wanted:
            return {}

        try:
            return await self._resolve(wanted)
        except Exception as e:
            logger.warning(f"Category resolution skipped for {len(wanted)} categories: {e}")
            return {}

    async def _resolve(self, wanted: list[str]) -> dict[str, str]:
        resolved: dict[str, str] = {}
        to_store: list[dict] = []

        async with self.session_factory() as db:
            result = await db.execute(select(Category.id, Category.name).where(Category.id.in_(wanted)))
            cached = {row.id: row.name for row in result.all()}

            missing: list[str] = []
            for category_id in wanted:
                if category_id in cached:
                    resolved[category_id] = cached[category_id]
                elif category_id in STATIC_CATEGORY_NAMES:
                    resolved[category_id] = STATIC_CATEGORY_NAMES[category_id]
                    to_store.append(self._row(category_id, resolved[category_id], "static"))
                else:
                    missing.append(category_id)

            for category_id in missing[: self.remote_limit]:
                try:
                    info = await self.source.fetch_category(category_id)
                except Exception as e:
                    logger.info(f"Category {category_id} lookup failed, retrying on next sighting: {e}")
                    continue
                if info is None:
                    continue
                resolved[category_id] = info.name
                to_store.append(self._row(category_id, info.name, "remote"))

            if len(missing) > self.remote_limit:
                logger.debug(
                    f"Deferred {len(missing) - self.remote_limit} category lookups to later pages"
                )

            if to_store:
                stmt = dialect_insert(db, Category).values(to_store)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["id"],
                    set_={"name": stmt.excluded.name, "updated_at": stmt.excluded.updated_at},
                )
                await db.execute(stmt)
                await db.commit()

        return resolved

    def _row(self, category_id: str, name: str, source: str) -> dict:
        return {
            "id": category_id,
            "name": name,
            "site_id": category_id[:3],
            "source": source,
            "updated_at": self.clock(),
        }
