from config.settings import *  # noqa: F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

REST_FRAMEWORK = {
    **REST_FRAMEWORK,  # noqa: F405
    "DEFAULT_THROTTLE_CLASSES": [],
}

LEDGER_DOCUMENT_STORE = "ledger.store.DjangoDocumentStore"
LEDGER_STRICT_PRODUCT_WRITES = False
LEDGER_SUGGESTION_COMPLETER = None
