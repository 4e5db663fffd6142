import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Determine Database URL based on TESTING environment variable
if os.environ.get("TESTING"):
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
    # One shared connection so every thread sees the same in-memory database
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    from route_dispatch.config import get_settings
    settings = get_settings()
    SQLALCHEMY_DATABASE_URL = settings["database_url"]
    engine = create_engine(SQLALCHEMY_DATABASE_URL, pool_pre_ping=True)

# Each instance of SessionLocal is a database session
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
