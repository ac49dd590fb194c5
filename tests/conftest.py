import os
import tempfile
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

# ---- テスト用DBパス（アプリのモジュールがエンジンを作る前に設定）----
_TMP_DIR = tempfile.mkdtemp(prefix="device_lifecycle_")
os.environ["APP_DB_PATH"] = os.path.join(_TMP_DIR, "test_lifecycle.db")
os.environ.pop("APP_DB_URL", None)


@pytest.fixture(scope="session")
def app_module():
    import main

    return main


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as c:
        yield c


@pytest.fixture()
def db_session(app_module):
    from db import SessionLocal

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def clean_db(app_module):
    # 各テスト前にテーブルを全消し（子テーブルから順に）
    from sqlalchemy import delete

    from db import Base, SessionLocal

    with SessionLocal() as db:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(delete(table))
        db.commit()
    yield


# ---- 各サイクルのテストで共有するビルダー ----
@pytest.fixture()
def make_device(db_session):
    import crud
    from models import DeviceIn

    counter = {"n": 0}

    def _make(name=None, *, expires=None):
        counter["n"] += 1
        n = counter["n"]
        body = DeviceIn(
            name=name or f"Laptop {n}",
            serial=f"SN-{n:04d}",
            warranty_expiration_date=expires if expires is not None else date.today() + timedelta(days=365),
        )
        return crud.create_device(db_session, body)

    return _make


@pytest.fixture()
def make_partner(db_session):
    import crud
    from enums import PartnerType
    from models import PartnerIn

    def _make(name="Alice", partner_type=PartnerType.BORROWER):
        return crud.create_partner(db_session, PartnerIn(name=name, partner_type=partner_type))

    return _make


@pytest.fixture()
def borrower(make_partner):
    return make_partner("Alice")


@pytest.fixture()
def loaner(make_partner):
    return make_partner("Front desk")
