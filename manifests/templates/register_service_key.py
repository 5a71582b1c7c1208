"""Create the default storage location and register the instance service key."""

import datetime

from cryptography.hazmat.primitives import serialization
from jwkest.jwk import RSAKey

from app import app
from data import model
from data.database import ImageStorageLocation, configure

KEY_PATH = "{quay_install}/conf/quay.pem"
KID_PATH = "{quay_install}/conf/quay.kid"

with app.app_context():
    configure(app.config)

    try:
        ImageStorageLocation.get(ImageStorageLocation.name == "default")
        print("Storage location default already exists")
    except ImageStorageLocation.DoesNotExist:
        ImageStorageLocation.create(name="default")
        print("Created storage location: default")

    with open(KEY_PATH, "rb") as f:
        private_key_pem = f.read()
    with open(KID_PATH, "r") as f:
        kid = f.read().strip()

    if model.service_keys.get_service_key(kid, approved_only=False):
        print("Service key %s already exists" % kid)
    else:
        private_key = serialization.load_pem_private_key(private_key_pem, password=None)
        rsa_key = RSAKey(use="sig")
        rsa_key.load_key(private_key.public_key())
        jwk = rsa_key.serialize(private=False)

        expiration = datetime.datetime.utcnow() + datetime.timedelta(days=3650)
        model.service_keys.create_service_key(
            name="Quay Instance Key",
            kid=kid,
            service="quay",
            jwk=jwk,
            metadata=dict(),
            expiration_date=expiration,
        )
        model.service_keys.approve_service_key(kid, "automatic", notes="Auto-approved during install")
        print("Created and approved service key: %s" % kid)
