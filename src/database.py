"""
NYC Sales Metrics Database Models

SQLAlchemy models for the raw `nyc_sales` source table and the derived
`sale_metrics` result set. Column names match the source extract and the
downstream reporting contract; every raw column is text because the source is
loosely typed and the cleaning stage does the casting.

Usage:
    from src.database import get_engine, create_tables, read_source_table

    engine = get_engine()
    create_tables(engine)
    raw = read_source_table(engine)
"""

import logging
from datetime import datetime
from typing import Optional

import pandas as pd
from sqlalchemy import Column, DateTime, Float, Integer, String, create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config.settings import DATABASE_URL, OUTPUT_TABLE, SOURCE_TABLE
from src.validation.data_contracts import DataContractError

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


# =============================================================================
# Source Table
# =============================================================================

class NycSale(Base):
    """
    NYC property sales as extracted, before any cleaning.

    Everything is stored as text; numbers may carry separators or be blank.
    """
    __tablename__ = SOURCE_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)

    neighborhood = Column("NEIGHBORHOOD", String(100))
    building_class_category = Column("BUILDING_CLASS_CATEGORY", String(100))
    borough = Column("BOROUGH", String(20))
    block = Column("BLOCK", String(20))
    lot = Column("LOT", String(20))
    zip_code = Column("ZIP_CODE", String(20))
    total_units = Column("TOTAL_UNITS", String(20))
    gross_square_feet = Column("GROSS_SQUARE_FEET", String(30))
    land_square_feet = Column("LAND_SQUARE_FEET", String(30))
    year_built = Column("YEAR_BUILT", String(10))
    sale_price = Column("SALE_PRICE", String(30))
    sale_date = Column("SALE_DATE", String(30))
    address = Column("ADDRESS", String(255))

    def __repr__(self):
        return f"<NycSale(neighborhood={self.neighborhood}, sale_price={self.sale_price})>"


# =============================================================================
# Derived Result Set
# =============================================================================

class SaleMetric(Base):
    """
    One enriched, formatted sale as delivered to reporting.

    Formatted columns are stored exactly as rendered.
    """
    __tablename__ = OUTPUT_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)

    neighborhood = Column("NEIGHBORHOOD", String(100), index=True)
    address = Column("ADDRESS", String(255))
    borough = Column("BOROUGH", Integer)
    block = Column("BLOCK", Integer)
    lot = Column("LOT", Integer)
    zip_code = Column("ZIP_CODE", Integer)
    building_class_category = Column("BUILDING_CLASS_CATEGORY", String(100), index=True)

    formatted_sale_price = Column(String(32))
    raw_sale_price = Column(Float, nullable=False)
    sale_price_zscore = Column(String(32))
    sale_price_zscore_neighborhood = Column(String(32))
    square_ft_per_unit = Column(String(32))
    price_per_unit = Column(String(32))

    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<SaleMetric(neighborhood={self.neighborhood}, sale_price={self.formatted_sale_price})>"


# Output frame column -> SaleMetric attribute
OUTPUT_ATTRIBUTES = {
    "NEIGHBORHOOD": "neighborhood",
    "ADDRESS": "address",
    "BOROUGH": "borough",
    "BLOCK": "block",
    "LOT": "lot",
    "ZIP_CODE": "zip_code",
    "BUILDING_CLASS_CATEGORY": "building_class_category",
    "formatted_sale_price": "formatted_sale_price",
    "raw_sale_price": "raw_sale_price",
    "sale_price_zscore": "sale_price_zscore",
    "sale_price_zscore_neighborhood": "sale_price_zscore_neighborhood",
    "square_ft_per_unit": "square_ft_per_unit",
    "price_per_unit": "price_per_unit",
}


# =============================================================================
# Helper Functions
# =============================================================================

def get_engine(url: Optional[str] = None) -> Engine:
    """Create an engine for `url` (defaults to DATABASE_URL)."""
    return create_engine(url or DATABASE_URL, echo=False, future=True)


def create_tables(engine: Engine):
    """Create all tables in the database."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def read_source_table(engine: Engine, table: str = SOURCE_TABLE) -> pd.DataFrame:
    """Read the raw source table as text columns."""
    if not inspect(engine).has_table(table):
        raise DataContractError(f"Source table '{table}' not found")

    logger.info(f"Loading raw data from table {table}...")
    df = pd.read_sql_table(table, engine)
    df = df.drop(columns=["id"], errors="ignore")
    logger.info(f"Loaded {len(df):,} records")
    return df


def _native(value):
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    return value.item() if hasattr(value, "item") else value


def load_metrics(frame: pd.DataFrame, engine: Engine, *, replace_existing: bool = False, batch_size: int = 5000) -> int:
    """Insert the formatted result set into the sale_metrics table."""
    logger.info(f"Loading {len(frame):,} rows into '{OUTPUT_TABLE}'...")
    create_tables(engine)

    records = frame[list(OUTPUT_ATTRIBUTES)].to_dict(orient="records")
    session = sessionmaker(bind=engine, autoflush=False)()

    try:
        # Delete and inserts commit together; a failed load keeps the previous rows
        if replace_existing:
            logger.info(f"replace_existing=True: clearing '{OUTPUT_TABLE}' before load")
            session.query(SaleMetric).delete()

        count = 0
        for i in range(0, len(records), batch_size):
            batch = records[i:i + batch_size]
            objects = [
                SaleMetric(**{OUTPUT_ATTRIBUTES[k]: _native(v) for k, v in row.items()})
                for row in batch
            ]
            session.bulk_save_objects(objects)
            count += len(batch)

        session.commit()
        logger.info(f"Loaded {count:,} records into '{OUTPUT_TABLE}'")
        return count

    except Exception as e:
        session.rollback()
        logger.error(f"Error loading data: {e}")
        raise
    finally:
        session.close()
