# resources/routers.py
from fastapi import APIRouter
from utils.response_wrapper import response_wrapper
from .views import (create_resource, list_resources, retrieve_blob, retrieve_description, retrieve_resource,
                    update_resource)

router = APIRouter()

router.get("/problem/{resource_id}/description")(response_wrapper(retrieve_description))
router.get("/{kind}")(response_wrapper(list_resources))
router.post("/{kind}", status_code=201)(response_wrapper(create_resource, status_code=201, message='Created'))
router.get("/{kind}/{resource_id}")(response_wrapper(retrieve_resource))
router.get("/{kind}/{resource_id}/blob")(response_wrapper(retrieve_blob))
router.patch("/{kind}/{resource_id}")(response_wrapper(update_resource, message='Updated'))
