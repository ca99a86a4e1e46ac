#!/usr/bin/env python3
"""
PMS Inventory Database Initialization Script
Creates the database tables and, optionally, a demo property
"""
import argparse
import logging

from pms_inventory.core.config import settings
from pms_inventory.core.database import SessionLocal, check_db_connection, init_db
from pms_inventory.core.logging import setup_logging
from pms_inventory.models import Property, Warehouse, StockCategory

logger = logging.getLogger("pms_inventory.scripts.init_db")

DEMO_WAREHOUSES = [
    ("Main Stockroom", "MAIN_STOCKROOM"),
    ("Kitchen", "KITCHEN"),
    ("Housekeeping", "HOUSEKEEPING"),
    ("Bar", "BAR"),
]

DEMO_CATEGORIES = ["Food", "Beverage", "Linen", "Amenities"]


def seed_demo_property(name: str):
    """Create a property with its standard warehouses and categories"""
    db = SessionLocal()
    try:
        prop = db.query(Property).filter(Property.name == name).first()
        if prop:
            logger.info(f"Property {name} already exists")
            return

        prop = Property(name=name)
        db.add(prop)
        db.flush()

        for warehouse_name, warehouse_type in DEMO_WAREHOUSES:
            db.add(Warehouse(property_id=prop.id, name=warehouse_name, type=warehouse_type))
        for category_name in DEMO_CATEGORIES:
            db.add(StockCategory(property_id=prop.id, name=category_name, is_system=True))

        db.commit()
        logger.info(f"Created property {name} with {len(DEMO_WAREHOUSES)} warehouses")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Initialize the inventory database")
    parser.add_argument("--demo", metavar="PROPERTY", help="Also create a demo property with this name")
    args = parser.parse_args()

    setup_logging()
    logger.info(f"Initializing database at {settings.DATABASE_URL}")

    if not check_db_connection():
        raise SystemExit("Database connection failed")

    init_db()
    if args.demo:
        seed_demo_property(args.demo)

    logger.info("Database initialization completed")


if __name__ == "__main__":
    main()
