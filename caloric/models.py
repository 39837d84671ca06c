# caloric/models.py
import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, JSON, Text
from sqlalchemy.dialects.postgresql import JSONB

from caloric.db import Base

# Identity column that stays autoincrement on SQLite (INTEGER PRIMARY KEY)
IdType = BigInteger().with_variant(Integer, "sqlite")
JsonType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class SearchResponseRecord(Base):
    __tablename__ = "mfp_search_responses"

    id = Column(IdType, primary_key=True, autoincrement=True)
    query = Column(Text, nullable=False)
    offset = Column(Integer, nullable=False)
    max_items = Column(Integer, nullable=False)
    country_code = Column(Text, nullable=False)
    resource_type = Column(Text, nullable=False)
    mfp_url = Column(Text, nullable=False)
    mfp_status = Column(Integer, nullable=False)
    response_json = Column(JsonType, nullable=True)
    response_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("mfp_search_responses_query_created_at_idx", "query", "created_at"),
    )


class FoodDetailResponseRecord(Base):
    __tablename__ = "mfp_food_detail_responses"

    id = Column(IdType, primary_key=True, autoincrement=True)
    search_response_id = Column(
        IdType,
        ForeignKey("mfp_search_responses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    food_id = Column(Text, nullable=False)
    version = Column(Text, nullable=False)
    mfp_url = Column(Text, nullable=False)
    mfp_status = Column(Integer, nullable=False)
    response_json = Column(JsonType, nullable=True)
    response_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("mfp_food_detail_responses_food_version_idx", "food_id", "version"),
        Index(
            "mfp_food_detail_responses_search_food_version_uidx",
            "search_response_id", "food_id", "version",
            unique=True,
        ),
    )
