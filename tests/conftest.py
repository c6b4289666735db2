import pytest

from asof import AsOfExtension, Database


@pytest.fixture
def db():
    database = Database()
    yield database
    database.close()


@pytest.fixture
def ext(db):
    extension = AsOfExtension().load(db)
    yield extension
    extension.unload()


@pytest.fixture
def session(db, ext):
    s = db.connect()
    yield s
    s.close()


@pytest.fixture
def acl(db):
    db.create_table("acl", {"user_id": "int64", "doc_id": "int64", "allowed": "boolean"})
    return "acl"
