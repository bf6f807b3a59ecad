from sqlalchemy import Column, Integer, String, Table, ForeignKey, UniqueConstraint, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import relationship, declarative_base, sessionmaker

Base = declarative_base()

file_tags_table = Table(
    'file_tags', Base.metadata,
    Column('file_id', Integer, ForeignKey('files.id'), nullable=False),
    Column('tag_id', Integer, ForeignKey('tags.id'), nullable=False),
    UniqueConstraint('file_id', 'tag_id', name='_file_tag_uc'),
)

# --- SQLAlchemy ORM Models ---

class File(Base):
    __tablename__ = 'files'
    id = Column(Integer, primary_key=True, autoincrement=True)
    filename = Column(String, unique=True, nullable=False, index=True)
    path = Column(String, nullable=False)
    description = Column(String, nullable=False, default='', server_default='')
    tags = relationship("Tag", secondary=file_tags_table, back_populates="files")

class Category(Base):
    __tablename__ = 'categories'
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    tags = relationship("Tag", back_populates="category")

class Tag(Base):
    __tablename__ = 'tags'
    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(Integer, ForeignKey('categories.id'), nullable=False)
    value = Column(String, nullable=False)
    category = relationship("Category", back_populates="tags")
    files = relationship("File", secondary=file_tags_table, back_populates="tags")
    # A tag is the unique combination of its category and value.
    __table_args__ = (UniqueConstraint('category_id', 'value', name='_category_value_uc'),)


# --- Engine Setup ---

@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores FOREIGN KEY clauses unless asked per connection.
    if dbapi_connection.__class__.__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_engine(database_url: str) -> Engine:
    engine = create_engine(database_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
