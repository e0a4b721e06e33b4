# models.py
import sqlalchemy
from lab_scheduler.database import metadata

#'users' table
users = sqlalchemy.Table(
    "users",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("username", sqlalchemy.String, unique=True, index=True),
    sqlalchemy.Column("full_name", sqlalchemy.String),
    sqlalchemy.Column("email", sqlalchemy.String, unique=True, index=True),
    sqlalchemy.Column("hashed_password", sqlalchemy.String),
    sqlalchemy.Column("role", sqlalchemy.String, default="user"),
)

#'computers' table: the bookable stations
computers = sqlalchemy.Table(
    "computers",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("name", sqlalchemy.String, unique=True),
    sqlalchemy.Column("description", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("status", sqlalchemy.String, default="available"),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime(timezone=True)),
)

reservations = sqlalchemy.Table(
    "reservations",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("user_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("computer_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("computers.id"), index=True),
    sqlalchemy.Column("start_time", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("end_time", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("status", sqlalchemy.String, index=True),
    sqlalchemy.Column("notes", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime(timezone=True)),
)

# One global FIFO queue; computer_id is only a preference
queue_entries = sqlalchemy.Table(
    "queue_entries",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("user_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("computer_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("computers.id"), nullable=True),
    sqlalchemy.Column("position", sqlalchemy.Integer),
    sqlalchemy.Column("status", sqlalchemy.String, default="waiting", index=True),
    sqlalchemy.Column("joined_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("called_at", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("expires_at", sqlalchemy.DateTime(timezone=True), nullable=True),
)

notifications = sqlalchemy.Table(
    "notifications",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("user_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("title", sqlalchemy.String),
    sqlalchemy.Column("message", sqlalchemy.Text),
    sqlalchemy.Column("type", sqlalchemy.String, default="info"),
    sqlalchemy.Column("read", sqlalchemy.Boolean, default=False),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
)
