import os
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import sqltypes

load_dotenv(os.path.join(os.getcwd(), ".env"))

# Store UUIDs as canonical strings on SQLite so string and UUID binds compare equal.
_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is None:
                return None
            if isinstance(value, uuid.UUID):
                return str(value)
            return str(uuid.UUID(str(value)))
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is None or isinstance(value, uuid.UUID):
                return value
            return uuid.UUID(value)
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


sqltypes.Uuid.bind_processor = _sqlite_uuid_bind_processor
sqltypes.Uuid.result_processor = _sqlite_uuid_result_processor

from app.db import Base  # noqa: E402
from app.models.city import (  # noqa: E402
    Assignment,
    Comment,
    Department,
    RequestPriority,
    RequestStatus,
    ServiceRequest,
    Upvote,
    User,
    UserRole,
)
from app.models import metrics as _metrics_models  # noqa: F401,E402

FIXED_NOW = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def fixed_clock():
    return lambda: FIXED_NOW


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def department(db_session):
    department = Department(name="Public Works", slug=f"public-works-{uuid.uuid4().hex[:8]}")
    db_session.add(department)
    db_session.commit()
    db_session.refresh(department)
    return department


@pytest.fixture()
def make_user(db_session):
    def _make(role=UserRole.citizen, department=None, name="Test User", created_at=None):
        user = User(
            name=name,
            email=_unique_email(),
            role=role,
            department_id=department.id if department else None,
            created_at=created_at or FIXED_NOW - timedelta(days=365),
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def citizen(make_user):
    return make_user(UserRole.citizen, name="Ana Citizen")


@pytest.fixture()
def clerk(make_user, department):
    return make_user(UserRole.clerk, department=department, name="Bo Clerk")


@pytest.fixture()
def make_request(db_session):
    counter = {"value": 0}

    def _make(
        creator,
        department=None,
        *,
        status=RequestStatus.submitted,
        priority=RequestPriority.medium,
        category="roads",
        created_at=None,
        closed_at=None,
        sla_due_at=None,
        satisfaction_rating=None,
        assignee=None,
    ):
        counter["value"] += 1
        request = ServiceRequest(
            code=f"REQ-{counter['value']:05d}",
            title=f"Request {counter['value']}",
            category=category,
            priority=priority,
            status=status,
            created_by=creator.id,
            assigned_to=assignee.id if assignee else None,
            department_id=department.id if department else None,
            created_at=created_at or FIXED_NOW - timedelta(hours=6),
            closed_at=closed_at,
            sla_due_at=sla_due_at,
            satisfaction_rating=satisfaction_rating,
        )
        db_session.add(request)
        db_session.commit()
        db_session.refresh(request)
        return request

    return _make


@pytest.fixture()
def add_assignments(db_session):
    def _add(request, assignee, assigned_by, count=1):
        for offset in range(count):
            db_session.add(
                Assignment(
                    request_id=request.id,
                    assignee_id=assignee.id,
                    assigned_by_id=assigned_by.id,
                    assigned_at=FIXED_NOW - timedelta(hours=5 - offset),
                )
            )
        db_session.commit()

    return _add


@pytest.fixture()
def add_comment(db_session):
    def _add(request, author, created_at=None):
        comment = Comment(
            request_id=request.id,
            author_id=author.id,
            body="Any update on this?",
            created_at=created_at or FIXED_NOW - timedelta(hours=1),
        )
        db_session.add(comment)
        db_session.commit()
        return comment

    return _add


@pytest.fixture()
def add_upvote(db_session):
    def _add(request, voter, created_at=None):
        upvote = Upvote(
            request_id=request.id,
            user_id=voter.id,
            created_at=created_at or FIXED_NOW - timedelta(hours=1),
        )
        db_session.add(upvote)
        db_session.commit()
        return upvote

    return _add
