from authcore.db.base import Base
from authcore.db.session import engine
import authcore.db.models  # noqa


def init_db():
    Base.metadata.create_all(bind=engine)


if __name__ == "__main__":
    init_db()
