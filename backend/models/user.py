# backend/models/user.py
from backend.extensions import db, bcrypt
from flask_login import UserMixin

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_SALES = "sales"
ROLE_ENGINEER = "engineer"
ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_SALES, ROLE_ENGINEER)


class User(db.Model, UserMixin):
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(150), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=True, index=True)
    password_hash = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_SALES)
    is_active_flag = db.Column("is_active", db.Boolean, nullable=False, default=True)

    # --- Password handling ---------------------------------------------------
    def set_password(self, password: str) -> None:
        self.password_hash = bcrypt.generate_password_hash(password).decode("utf-8")

    def check_password(self, password: str) -> bool:
        try:
            return bcrypt.check_password_hash(self.password_hash, password)
        except ValueError:
            # malformed hash (e.g. imported from another system)
            return False

    @property
    def is_active(self) -> bool:
        return bool(self.is_active_flag)

    def has_role(self, *roles: str) -> bool:
        return self.role in roles

    def get_id(self):
        return str(self.id)

    def __repr__(self):
        return f"<User {self.username} role={self.role}>"
