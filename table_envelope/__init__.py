"""
Table Envelope Encryption Library

Client-side envelope encryption for table entities, with transactional batch
execution and key rotation that rewraps content keys without touching
property ciphertext.

Quick Start
-----------
```python
import asyncio
from table_envelope import (
    CloudTableClient,
    EdmType,
    EntityProperty,
    SymmetricKey,
    TableEncryptionPolicy,
    TableEntity,
    TableOperation,
    TableRequestOptions,
    TableServiceSettings,
)

async def main():
    settings = TableServiceSettings.from_env()
    key = SymmetricKey.generate()
    options = TableRequestOptions(encryption_policy=TableEncryptionPolicy(key=key))

    async with CloudTableClient(settings) as client:
        table = client.get_table_reference("customers")

        entity = TableEntity("eu", "42", {
            "Name": EntityProperty(EdmType.STRING, "Ada"),
            "Ssn": EntityProperty(EdmType.STRING, "123-45-6789", encrypt=True),
        })
        async with table.batch(options) as batch:
            batch.insert(entity)
            batch.retrieve("eu", "42")

        result = await table.execute(TableOperation.retrieve("eu", "42"), options)
        print(result.result["Ssn"].value)

asyncio.run(main())
```

Key Features
------------
- **AES-256-CBC per entity**: Fresh content key and IV for every write
- **Per-property IVs**: Derived from the content IV and the property name
- **Pluggable key wrapping**: AES key wrap, RSA-OAEP, or any async key
- **Key Rotation**: Rewrap content keys; ciphertext stays in place
- **Atomic Batches**: Up to 100 operations, all results or one error
- **PostgreSQL Key Store**: Key lifecycle with ACTIVE/RETIRED/DISABLED keys
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    IV_SIZE,
    AesCbcCipher,
    SecureKey,
    derive_column_iv,
    generate_random_bytes,
)
from .keys import (
    A256KW,
    RSA_OAEP,
    InMemoryKeyResolver,
    KeyEncryptionKey,
    KeyResolver,
    RsaKey,
    SymmetricKey,
)

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    BatchContractError,
    BatchOperationError,
    ConfigError,
    CryptoError,
    DecryptionError,
    EntityShapeError,
    KeyMismatchError,
    KeyNotFoundError,
    ServiceError,
    StorageError,
)

# =============================================================================
# Entity and Encryption Exports
# =============================================================================

from .models import (
    EdmType,
    EntityProperty,
    TableEntity,
    TableOperation,
    TableOperationType,
    TableResult,
)
from .encryption import (
    ENCRYPTION_PROTOCOL_V1,
    TABLE_ENCRYPTION_KEY_DETAILS,
    TABLE_ENCRYPTION_PROPERTY_DETAILS,
    EncryptionAgent,
    EncryptionAlgorithm,
    EncryptionData,
    TableEncryptionPolicy,
    WrappedContentKey,
)
from .key_rotation import KeyRotationEntity, rewrap_content_key

# =============================================================================
# Client Exports (Primary API)
# =============================================================================

from .auth import TokenCredential
from .batch import MAX_BATCH_OPERATIONS, TableBatchOperation
from .client import CloudTableClient
from .config import TableRequestOptions, TableServiceSettings
from .executor import LocationMode, RetryPolicy
from .table import CloudTable

# =============================================================================
# PostgreSQL Exports
# =============================================================================

from .postgres import KeyStatus, PostgresKeyStore, StoredKey

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "IV_SIZE",
    "AesCbcCipher",
    "SecureKey",
    "derive_column_iv",
    "generate_random_bytes",
    "A256KW",
    "RSA_OAEP",
    "KeyEncryptionKey",
    "KeyResolver",
    "SymmetricKey",
    "RsaKey",
    "InMemoryKeyResolver",
    # Errors
    "StorageError",
    "ConfigError",
    "EntityShapeError",
    "CryptoError",
    "DecryptionError",
    "KeyMismatchError",
    "KeyNotFoundError",
    "BatchContractError",
    "ServiceError",
    "BatchOperationError",
    # Entities and encryption
    "EdmType",
    "EntityProperty",
    "TableEntity",
    "TableOperation",
    "TableOperationType",
    "TableResult",
    "ENCRYPTION_PROTOCOL_V1",
    "TABLE_ENCRYPTION_KEY_DETAILS",
    "TABLE_ENCRYPTION_PROPERTY_DETAILS",
    "EncryptionAgent",
    "EncryptionAlgorithm",
    "EncryptionData",
    "WrappedContentKey",
    "TableEncryptionPolicy",
    "KeyRotationEntity",
    "rewrap_content_key",
    # Client (Primary API)
    "CloudTableClient",
    "CloudTable",
    "TableBatchOperation",
    "MAX_BATCH_OPERATIONS",
    "TableRequestOptions",
    "TableServiceSettings",
    "TokenCredential",
    "LocationMode",
    "RetryPolicy",
    # PostgreSQL
    "PostgresKeyStore",
    "StoredKey",
    "KeyStatus",
]
