from sqlalchemy import JSON, String
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# text[] en Postgres/Supabase; JSON en SQLite (tests)
StringList = ARRAY(String).with_variant(JSON(), "sqlite")
