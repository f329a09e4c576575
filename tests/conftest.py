"""
Shared pytest fixtures.

Provides:
    - session: in-memory SQLite session with every table created
    - seed: helper that creates users, projects and filled-in weeks
"""
from datetime import date, timedelta
from typing import Dict, List, Optional
import pytest
from sqlmodel import Session, SQLModel, create_engine
import sheetflow.models  # noqa: F401
from sheetflow.models import Project, ProjectMember, ProjectRole, Role, User
from sheetflow.schemas import Actor
from sheetflow.entries import add_entries, get_or_create_timesheet
from sheetflow.workflow import submit_timesheet

# A Monday well in the past, so no entry is a future date
WEEK = date(2024, 9, 30)


def weekdays(week_start: date = WEEK) -> List[date]:
    return [week_start + timedelta(days=i) for i in range(5)]


def week_entries(allocation: Dict[Optional[str], float], week_start: date = WEEK, **extra) -> List[dict]:
    """One entry per project per weekday, ``allocation`` mapping project_id -> hours per day."""
    return [
        dict({"project_id": project_id, "date": day, "hours": hours}, **extra)
        for day in weekdays(week_start)
        for project_id, hours in allocation.items()
    ]


class Seed:
    def __init__(self, session: Session):
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def user(self, name: str, role: Role = Role.EMPLOYEE, manager: Optional[User] = None,
             hourly_rate: Optional[float] = None) -> User:
        return self._save(User(
            name=name,
            email=f"{name.lower()}@example.com",
            role=role,
            manager_id=manager.id if manager else None,
            hourly_rate=hourly_rate,
        ))

    def project(self, name: str, manager: Optional[User] = None, lead: Optional[User] = None,
                is_billable: bool = True) -> Project:
        project = self._save(Project(
            name=name,
            client_name="Acme",
            primary_manager_id=manager.id if manager else None,
            is_billable=is_billable,
        ))
        if lead:
            self._save(ProjectMember(project_id=project.id, user_id=lead.id, project_role=ProjectRole.LEAD))
        return project

    @staticmethod
    def actor(user: User) -> Actor:
        return Actor(id=user.id, role=user.role)

    def week(self, owner: User, allocation: Dict[Optional[str], float], week_start: date = WEEK, **extra):
        timesheet = get_or_create_timesheet(self.session, owner.id, week_start)
        add_entries(self.session, self.actor(owner), timesheet.id, week_entries(allocation, week_start, **extra))
        return timesheet

    def submitted(self, owner: User, allocation: Dict[Optional[str], float], week_start: date = WEEK):
        timesheet = self.week(owner, allocation, week_start)
        submit_timesheet(self.session, self.actor(owner), timesheet.id)
        self.session.refresh(timesheet)
        return timesheet


@pytest.fixture(name="session")
def session_fixture():
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture
def seed(session):
    return Seed(session)
