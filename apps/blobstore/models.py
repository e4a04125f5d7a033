"""Models for the blob store.

BlobData - holds blob bytes when the database storage backend is selected
"""
from tortoise import fields, models


class BlobData(models.Model):
    # key of the owning record (its uuid, or uuid + "description")
    id = fields.CharField(primary_key=True, max_length=255)
    size = fields.BigIntField()
    data = fields.BinaryField()

    class Meta:
        default_connection = "default"
        table = "blobs_data"
