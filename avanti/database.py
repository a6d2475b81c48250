from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
import logging
import os

logger = logging.getLogger(__name__)

# Database path detection for both Docker and bare metal
def get_database_url():
    if os.getenv("DATABASE_URL"):
        return os.getenv("DATABASE_URL")

    # Check if we're in Docker environment
    if os.path.exists('/app') and os.path.exists('/home/app'):
        # Docker environment - use /app/data (mounted volume)
        data_dir = '/app/data'
        try:
            # Test write permissions
            test_file = f'{data_dir}/.write_test'
            with open(test_file, 'w') as f:
                f.write('test')
            os.remove(test_file)
            logger.info(f"Using Docker data directory: {data_dir}")
            return f"sqlite:///{data_dir}/avanti.db"
        except OSError as e:
            logger.warning(f"Docker data directory {data_dir} not writable: {e}")
            logger.warning("Using /tmp as fallback (NOT PERSISTENT)")
            return "sqlite:////tmp/avanti.db"
    else:
        # Bare metal environment
        data_dir = './data'
        try:
            os.makedirs(data_dir, mode=0o755, exist_ok=True)
            logger.info(f"Using bare metal data directory: {data_dir}")
        except OSError as e:
            logger.warning(f"Could not create data directory {data_dir}: {e}")

        return "sqlite:///./data/avanti.db"

def make_engine(database_url):
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if "sqlite" in database_url else {}
    )

DATABASE_URL = get_database_url()
logger.info(f"Using database URL: {DATABASE_URL}")

engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
