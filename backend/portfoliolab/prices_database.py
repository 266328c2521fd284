from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_prices_database_url

SQLALCHEMY_PRICES_DATABASE_URL = get_prices_database_url()

prices_engine = create_engine(
    SQLALCHEMY_PRICES_DATABASE_URL,
    connect_args={"check_same_thread": False},
)

PricesSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=prices_engine,
)

PricesBase = declarative_base()
