from rest_framework.response import Response
from rest_framework.views import exception_handler


def api_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is None:
        return response

    if isinstance(response.data, dict):
        detail = response.data.get("detail", "Request failed")
        fields = {k: v for k, v in response.data.items() if k != "detail"}
    elif isinstance(response.data, list):
        detail = response.data[0] if response.data else "Request failed"
        fields = {}
    else:
        detail = "Request failed"
        fields = {}

    response.data = {
        "code": getattr(exc, "default_code", "error"),
        "detail": detail,
        "fields": fields,
    }
    return response


def error_response(exc, status_code=None):
    """Envelope for domain errors carrying ``code``, ``detail``, ``fields`` and ``status_code``."""
    return Response(
        {"code": exc.code, "detail": exc.detail, "fields": exc.fields},
        status=status_code or exc.status_code,
    )
