"""Initialize database tables and optionally enable the optimizer for restaurants.

Usage:
    python init_db.py                 # create tables
    python init_db.py rest_1 rest_2   # create tables and enable rest_1, rest_2
"""
import sys
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sitelift.config import get_settings
from sitelift.database import SessionLocal, engine, Base
from sitelift.services.store import ExperimentStore


def init_database(restaurant_ids=()):
    """Create all tables, then enable the optimizer for each restaurant given."""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    print("✓ Tables ready")

    if not restaurant_ids:
        return

    db: Session = SessionLocal()
    try:
        store = ExperimentStore(db, tz_name=get_settings().timezone)
        for restaurant_id in restaurant_ids:
            state = store.set_enabled(restaurant_id, True)
            print(f"✓ Optimizer enabled for {state.restaurant_id} (week of {state.week_start})")

        print("\n" + "="*50)
        print(f"✓ {len(restaurant_ids)} restaurant(s) enabled")
        print("="*50)
        print("Trigger a pass manually with:")
        print(f'  curl -X POST -H "x-api-key: $ADMIN_API_KEY" http://localhost:8000/optimizer/{restaurant_ids[0]}/run')

    except SQLAlchemyError as e:
        print(f"✗ Error initializing database: {e}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    init_database(sys.argv[1:])
