"""Create the Quay admin user if it doesn't exist yet, and verify it."""

import os
import sys

from app import app
from data import model
from data.database import configure

USERNAME = "{admin_user}"
EMAIL = "{admin_email}"

with app.app_context():
    configure(app.config)

    user = model.user.get_user(USERNAME)
    if user is None:
        password = os.environ.get("QUAY_ADMIN_PASSWORD")
        if not password:
            sys.exit("QUAY_ADMIN_PASSWORD is not set")
        user = model.user.create_user(USERNAME, password, EMAIL)
        print("Created admin user: %s" % user.username)
    else:
        print("Admin user %s already exists" % user.username)

    if not user.verified:
        user.verified = True
        user.save()
        print("Marked %s as verified" % user.username)
