"""Create the mirror organization, owned by the admin user."""

import sys

from app import app
from data import model
from data.database import configure

ORG = "{org_name}"
OWNER = "{admin_user}"

with app.app_context():
    configure(app.config)

    admin = model.user.get_user(OWNER)
    if not admin:
        sys.exit("Admin user %s not found" % OWNER)

    if model.organization.get_organization(ORG):
        print("Organization %s already exists" % ORG)
    else:
        org = model.organization.create_organization(ORG, "%s@{hostname}" % ORG, admin)
        print("Created organization: %s" % org.username)
