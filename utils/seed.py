from models import db
from models.user import Role

DEFAULT_ROLES = ["PLAYER", "OWNER", "ADMIN"]

def seed_roles():
    existing = {r.name for r in Role.query.all()}
    missing = [name for name in DEFAULT_ROLES if name not in existing]
    for name in missing:
        db.session.add(Role(name=name))
    db.session.commit()
    return missing


def grant_role(user, name: str) -> bool:
    role = Role.query.filter_by(name=name).first()
    if role is None:
        role = Role(name=name)
        db.session.add(role)
    if role in user.roles:
        return False
    user.roles.append(role)
    db.session.commit()
    return True
