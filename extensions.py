"""Shared Flask extension singletons and the collaborator registry."""
from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_wtf import CSRFProtect
from flask_login import LoginManager

# Initialize extensions without app; app_factory will bind them.
csrf = CSRFProtect()
db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()

COLLABORATOR_PREFIX = "portal."


def register_collaborator(app, name: str, instance) -> None:
    """Attach an external collaborator (mail sender, notifier, session store) to the app."""
    app.extensions[f"{COLLABORATOR_PREFIX}{name}"] = instance


def collaborator(name: str):
    try:
        return current_app.extensions[f"{COLLABORATOR_PREFIX}{name}"]
    except KeyError as exc:
        raise RuntimeError(f"Collaborator '{name}' is not registered on this app") from exc
