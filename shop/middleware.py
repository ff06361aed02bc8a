import json
import logging

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ("code", "email", "signature", "password")


def _mask(data):
    if isinstance(data, dict):
        return {
            key: "***" if key in SENSITIVE_FIELDS and value not in (None, "") else _mask(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_mask(item) for item in data]
    return data


def mask_body(body: str) -> str:
    """Replace the values of sensitive JSON fields, at any depth, with '***'."""
    try:
        data = json.loads(body)
    except ValueError:
        return body
    return json.dumps(_mask(data), ensure_ascii=False)


class RequestResponseLoggingMiddleware:
    """
    Middleware that logs each request method, path, body,
    and the corresponding response content, with customer codes,
    emails and payment secrets masked.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        # Django caches request.body, so reading it here leaves it intact for the view.
        request_body = ""
        content_type = request.META.get("CONTENT_TYPE", "")

        if "multipart/form-data" in content_type:
            request_body = "<Multipart form data - body not logged>"
        else:
            try:
                if request.method in ["POST", "PUT", "PATCH"] and request.body:
                    request_body = mask_body(request.body.decode("utf-8"))
            except UnicodeDecodeError:
                request_body = "<Could not decode body>"

        logger.info(
            "API Request: %s %s Body: %s",
            request.method,
            request.path,
            request_body,
        )

        response = self.get_response(request)

        response_content = ""
        response_type = response.get("Content-Type", "")

        if response_type.startswith("application/json") or response_type.startswith("text/"):
            if getattr(response, "streaming", False):
                response_content = "<Streaming content>"
            else:
                try:
                    response_content = mask_body(response.content.decode("utf-8"))
                except UnicodeDecodeError:
                    response_content = "<Could not decode content>"
        else:
            response_content = f"<Content-Type: {response_type}>"

        logger.info(
            "API Response: %s %s Status: %s Content: %s",
            request.method,
            request.path,
            response.status_code,
            response_content,
        )

        return response
