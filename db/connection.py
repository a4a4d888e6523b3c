from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import config

_url = config.DATABASE_URL
_pool_args = {} if _url.startswith("sqlite") else {"pool_size": 10, "max_overflow": 20}

engine = create_engine(
    _url,
    echo=config.SQL_ECHO,
    pool_pre_ping=True,
    **_pool_args,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
