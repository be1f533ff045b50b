"""
Configuration module for the rewards engine and its Lambda handlers.
Loads all environment variables needed by the platform.
"""
import os


class Config:
    """Centralized configuration from environment variables."""

    # AWS Region
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # DynamoDB Tables
    TASK_CATALOG_TABLE = os.environ.get('TASK_CATALOG_TABLE', 'edu-task-catalog')
    USER_TASKS_TABLE = os.environ.get('USER_TASKS_TABLE', 'edu-user-tasks')
    PROOFS_TABLE = os.environ.get('PROOFS_TABLE', 'edu-proofs')
    WALLETS_TABLE = os.environ.get('WALLETS_TABLE', 'edu-wallets')
    TRANSACTIONS_TABLE = os.environ.get('TRANSACTIONS_TABLE', 'edu-wallet-transactions')
    REDEMPTIONS_TABLE = os.environ.get('REDEMPTIONS_TABLE', 'edu-redemptions')
    REDEMPTION_CODES_TABLE = os.environ.get('REDEMPTION_CODES_TABLE', 'edu-redemption-codes')

    # Task catalog source (JSON file). Falls back to TASK_CATALOG_TABLE when empty.
    CATALOG_PATH = os.environ.get('CATALOG_PATH', '')

    # S3 Buckets
    MEDIA_BUCKET = os.environ.get('MEDIA_BUCKET', '')
    PRESIGNED_URL_EXPIRATION = int(os.environ.get('PRESIGNED_URL_EXPIRATION', '3600'))

    # Proof constraints
    MAX_PHOTO_BYTES = int(os.environ.get('MAX_PHOTO_BYTES', str(10 * 1024 * 1024)))
    ALLOWED_PHOTO_TYPES = tuple(
        t.strip() for t in os.environ.get(
            'ALLOWED_PHOTO_TYPES', 'image/jpeg,image/png,image/webp,image/heic'
        ).split(',') if t.strip()
    )
    TEXT_PROOF_MIN_CHARS = int(os.environ.get('TEXT_PROOF_MIN_CHARS', '10'))
    TEXT_PROOF_MAX_CHARS = int(os.environ.get('TEXT_PROOF_MAX_CHARS', '5000'))

    # In-app (auto) proofs are trusted and resolved without a teacher
    AUTO_APPROVE_AUTO_PROOFS = os.environ.get('AUTO_APPROVE_AUTO_PROOFS', 'true').lower() == 'true'
    AUTO_PROOF_REVIEWER = os.environ.get('AUTO_PROOF_REVIEWER', 'system:auto-proof')

    # Redemption policy
    REDEMPTION_EXPIRY_HOURS = int(os.environ.get('REDEMPTION_EXPIRY_HOURS', '48'))
    CODE_MAX_ATTEMPTS = int(os.environ.get('CODE_MAX_ATTEMPTS', '5'))
    SWEEP_BATCH_LIMIT = int(os.environ.get('SWEEP_BATCH_LIMIT', '500'))

    # Ledger optimistic-lock retries per mutation
    LEDGER_MAX_RETRIES = int(os.environ.get('LEDGER_MAX_RETRIES', '5'))


config = Config()
