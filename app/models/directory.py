"""
Directory models: sectors and user profiles.

Models:
    - Sector: municipal department; owns a chat channel and a per-year counter scope
    - Profile: user directory entry listed in the chat sidebar
"""

from app.models import db


class Sector(db.Model):
    """Municipal sector (Secretaria / Departamento)."""

    __tablename__ = "sectors"

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)

    def to_dict(self):
        return {"id": self.id, "name": self.name}

    def __repr__(self):
        return f"<Sector {self.id}: {self.name}>"


class Profile(db.Model):
    """
    User directory entry.

    `sector` stores the sector *name* (as typed by administrators);
    use `resolve_sector()` to get the Sector row.
    """

    __tablename__ = "profiles"

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    username = db.Column(db.String(100), unique=True, nullable=False)
    sector = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(30), default="user")
    job_title = db.Column(db.String(200), nullable=True)

    def resolve_sector(self):
        if not self.sector:
            return None
        return Sector.query.filter_by(name=self.sector).first()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "sector": self.sector,
            "role": self.role,
            "job_title": self.job_title,
        }

    def __repr__(self):
        return f"<Profile {self.username}>"
