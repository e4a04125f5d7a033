"""Error taxonomy of the resource API.

Every error carries the HTTP status it is surfaced with and a message
naming the offending field where there is one.
"""
from typing import Optional

FIELD_LABELS = {
    'name': 'Name',
    'owner': 'Owner',
    'uuid': 'UUID',
    'size': 'Size',
    'description': 'Description',
    'blob': 'Blob',
    'algo': 'Algo',
}


class ResourceError(Exception):
    status_code = 500

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ClientInputError(ResourceError):
    status_code = 400


class HeaderParseError(ClientInputError):
    def __init__(self, reason: str):
        super().__init__(f'Error parsing header: {reason}')


class UnsupportedMediaType(ClientInputError):
    def __init__(self, media_type: str):
        super().__init__(f'Invalid media type {media_type!r}: expected multipart/form-data')


class MalformedMultipart(ClientInputError):
    def __init__(self, reason: str):
        super().__init__(f'Malformed multipart body: {reason}')


class ClientDisconnected(ClientInputError):
    def __init__(self):
        super().__init__('Client disconnected before the upload completed')


class UnknownField(ClientInputError):
    def __init__(self, field: str):
        super().__init__(f"Unknown field '{field}'", field)


class MisplacedBlobField(ClientInputError):
    def __init__(self, field: str):
        super().__init__(f"Misplaced blob field: '{field}' received after 'blob', blob must be the last field", field)


class BufferOverflow(ClientInputError):
    def __init__(self, field: str, limit: int):
        super().__init__(f'Buffer overflow reading {field}: value exceeds {limit} bytes', field)


class UUIDParseError(ClientInputError):
    def __init__(self, field: str, value: str):
        super().__init__(f'Error parsing UUID {field}: {value!r} is not a valid UUID', field)


class SizeParseError(ClientInputError):
    def __init__(self, value: str):
        super().__init__(f'Error parsing size: {value!r} is not a non-negative integer', 'size')


class RequiredFieldMissing(ClientInputError):
    def __init__(self, field: str):
        self.label = FIELD_LABELS.get(field, field)
        super().__init__(f"Field '{self.label}' unset", field)


class InvalidDescriptionType(ClientInputError):
    def __init__(self):
        super().__init__("Invalid description: description should be a '.md' file", 'description')


class InvalidFieldEncoding(ClientInputError):
    def __init__(self, field: str):
        super().__init__(f'Error decoding {field}: value is not valid UTF-8', field)


class MalformedIdentifier(ClientInputError):
    def __init__(self, value: str):
        super().__init__(f'Impossible to parse UUID {value!r}')


class NotFound(ResourceError):
    status_code = 404


class ReferenceNotFound(NotFound):
    pass


class IdentifierConflict(ResourceError):
    status_code = 409

    def __init__(self, message: str):
        super().__init__(message, 'uuid')


class StorageBackendError(ResourceError):
    status_code = 500


class BlobWriteError(StorageBackendError):
    pass
