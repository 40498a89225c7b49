import os

# 测试环境：只输出到控制台，不启动定时任务
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("PENDING_ORDER_EXPIRY_ENABLED", "false")

from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from app.core.deps import get_db, get_gateway
from app.db.init_db import ensure_tables_exist
from app.db.session import create_engine_for, create_session_factory
from app.models import User, VehicleModel, Vehicle, Promotion
from app.models.v3 import VehicleStatus
from app.services.gateway import VNPayGateway

from helpers import tomorrow_at


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_for(f"sqlite:///{tmp_path / 'test.db'}")
    await ensure_tables_exist(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return VNPayGateway(
        tmn_code="TEST0001",
        hash_secret="test-hash-secret",
        pay_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
    )


@pytest.fixture
async def world(session_factory):
    """
    两个客户、一名员工、一个 10/小时 的车型、两辆车、一个 10% 优惠码

    用单独的会话写入，测试会话回滚时这些对象不会过期
    """
    now = datetime.now()
    async with session_factory() as session:
        customer = User(username="alice", full_name="Alice", role="customer")
        other = User(username="bob", full_name="Bob", role="customer")
        staff = User(username="staff01", full_name="站点员工", role="staff")
        session.add_all([customer, other, staff])

        model = VehicleModel(name="VF e34", price_per_hour=Decimal("10"))
        session.add(model)
        await session.flush()

        vehicle = Vehicle(serial_number="EV-0001", model_id=model.id, station_id=1,
                          status=VehicleStatus.AVAILABLE, battery_level=90)
        spare = Vehicle(serial_number="EV-0002", model_id=model.id, station_id=1,
                        status=VehicleStatus.AVAILABLE, battery_level=80)
        promo = Promotion(promo_code="SAVE10", discount_percentage=Decimal("10"),
                          start_date=now - timedelta(days=1), end_date=now + timedelta(days=30),
                          is_active=True)
        session.add_all([vehicle, spare, promo])
        await session.commit()

    return SimpleNamespace(
        customer=customer, other=other, staff=staff, model=model,
        vehicle=vehicle, spare=spare, promo=promo,
        start=tomorrow_at(10), end=tomorrow_at(14),
    )


@pytest.fixture
async def client(session_factory, gateway):
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
