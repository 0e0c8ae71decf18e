"""AWS Lambda entry points: the HTTP API behind API Gateway and the SQS image worker."""
from mangum import Mangum

from designgen.main import app
from designgen.worker import handle_sqs_event

handler = Mangum(app, lifespan="off")


def image_worker_handler(event, context):
    return handle_sqs_event(event, context)
