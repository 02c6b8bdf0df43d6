"""Seed sample institutions and legacy-role users for demo purposes."""

from sqlalchemy.orm import Session
from rolekeeper.models.institution import Institution, Department
from rolekeeper.models.user import User


def seed_sample_data(db: Session) -> None:
    """Insert one institution, two departments, and users still on legacy roles."""

    institution = db.query(Institution).filter(Institution.name == "Demo University").first()
    if not institution:
        institution = Institution(name="Demo University")
        db.add(institution)
        db.flush()

    departments = {}
    for name in ("Mathematics", "History"):
        dept = (
            db.query(Department)
            .filter(Department.institution_id == institution.id, Department.name == name)
            .first()
        )
        if not dept:
            dept = Department(institution_id=institution.id, name=name)
            db.add(dept)
            db.flush()
        departments[name] = dept

    # --- Users still carrying only the legacy role column ---
    sample_users = [
        ("alice.student@demo.edu", "student", "Mathematics"),
        ("bob.instructor@demo.edu", "instructor", "Mathematics"),
        ("carol.faculty@demo.edu", "faculty", "History"),
        ("dave.admin@demo.edu", "admin", None),
        ("erin.deptadmin@demo.edu", "dept_admin", "History"),
        ("frank.unknown@demo.edu", "guest", None),
    ]
    created = 0
    for email, legacy_role, dept_name in sample_users:
        existing = db.query(User).filter(User.email == email).first()
        if existing:
            continue
        db.add(User(
            email=email,
            role=legacy_role,
            institution_id=institution.id,
            department_id=departments[dept_name].id if dept_name else None,
        ))
        created += 1

    db.commit()
    print(f"✅ Sample data seeded ({created} new users)")
