"""Shared fixtures: in-memory SQLite database, users and a sample plan."""
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from planner_core import directory, events, nodes, plan_tree
from planner_core.database import make_engine
from planner_core.models import Base, CollaboratorRole, UserType


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture
def recorder():
    """Capture events emitted during a test."""
    sink = events.RecordingEventSink()
    events.dispatcher.register(sink)
    yield sink
    events.dispatcher.unregister(sink)


@pytest.fixture
def owner(db):
    return directory.create_user(db, "owner@example.com", "Olivia Owner")


@pytest.fixture
def editor(db):
    return directory.create_user(db, "editor@example.com", "Eddie Editor")


@pytest.fixture
def viewer(db):
    return directory.create_user(db, "viewer@example.com", "Vera Viewer")


@pytest.fixture
def outsider(db):
    return directory.create_user(db, "outsider@example.com", "Oscar Outsider")


@pytest.fixture
def agent(db):
    return directory.create_user(db, "agent@example.com", "Build Agent", user_type=UserType.AGENT)


@pytest.fixture
def plan(db, owner, editor, viewer):
    """Private plan owned by `owner`, with an editor and a viewer collaborator."""
    db_plan = plan_tree.create_plan(db, owner.id, "Launch", description="Ship v1")
    plan_tree.add_collaborator(db, db_plan.id, owner.id, editor.id, CollaboratorRole.EDITOR)
    plan_tree.add_collaborator(db, db_plan.id, owner.id, viewer.id, CollaboratorRole.VIEWER)
    return db_plan


@pytest.fixture
def root(db, plan):
    return nodes.get_root(db, plan.id)
