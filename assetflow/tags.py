# assetflow/tags.py
import logging
from typing import Dict, List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from assetflow.db import dialect_insert
from assetflow.models import ASSET_TAG_JOINS, AssetType, Tag
from assetflow.tagging import normalize_tag_names

logger = logging.getLogger(__name__)


async def get_or_create_tags(session: AsyncSession, user_id: str, names: List[str]) -> Dict[str, int]:
    """
    Resolve tag names to ids for `user_id`, creating missing tags.
    Concurrent creators of the same name converge on one row through the (user_id, name) unique key.
    """
    names = normalize_tag_names(names)
    if not names:
        return {}
    stmt = dialect_insert(session, Tag.__table__).values(
        [{"user_id": user_id, "name": name} for name in names]
    ).on_conflict_do_nothing(index_elements=["user_id", "name"])
    await session.execute(stmt)
    rows = await session.execute(select(Tag.name, Tag.id).where(Tag.user_id == user_id, Tag.name.in_(names)))
    return {name: tag_id for name, tag_id in rows.all()}


async def replace_asset_tags(session: AsyncSession, asset_type: AssetType, asset_id: str,
                             user_id: str, names: List[str]) -> List[str]:
    join_model, fk_col = ASSET_TAG_JOINS[AssetType(asset_type)]
    tag_ids = await get_or_create_tags(session, user_id, names)
    await session.execute(delete(join_model).where(fk_col == asset_id))
    if tag_ids:
        await session.execute(
            join_model.__table__.insert(),
            [{fk_col.key: asset_id, "tag_id": tag_id} for tag_id in tag_ids.values()],
        )
    logger.debug("Tags for %s/%s set to %s", AssetType(asset_type).value, asset_id, list(tag_ids))
    return sorted(tag_ids)


async def get_asset_tags(session: AsyncSession, asset_type: AssetType, asset_id: str) -> List[str]:
    join_model, fk_col = ASSET_TAG_JOINS[AssetType(asset_type)]
    rows = await session.execute(
        select(Tag.name).join(join_model, join_model.tag_id == Tag.id).where(fk_col == asset_id).order_by(Tag.name)
    )
    return list(rows.scalars().all())
