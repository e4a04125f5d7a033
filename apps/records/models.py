"""Models for the record store.

One table per resource kind. Every record owns a primary blob stored under
its id; a Problem also owns a markdown description blob.
"""
from tortoise import fields, models

NAME_MAX_LENGTH = 255


class Resource(models.Model):
    id = fields.UUIDField(primary_key=True)
    owner = fields.UUIDField()
    # byte length of the primary blob
    size = fields.BigIntField()
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        abstract = True


class Problem(Resource):
    name = fields.CharField(max_length=NAME_MAX_LENGTH)

    class Meta:
        default_connection = "default"
        table = "problem"


class Algo(Resource):
    name = fields.CharField(max_length=NAME_MAX_LENGTH)

    class Meta:
        default_connection = "default"
        table = "algo"


class Data(Resource):

    class Meta:
        default_connection = "default"
        table = "data"


class Model(Resource):
    # checked against the algo table at creation time only
    algo = fields.UUIDField()

    class Meta:
        default_connection = "default"
        table = "model"
