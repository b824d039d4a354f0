"""
Small helpers shared by the JSON API views.
"""
import json
from functools import wraps

from django.http import JsonResponse


class InvalidJSONBody(ValueError):
    pass


def parse_json_body(request) -> dict:
    """
    Decodes the request body as a JSON object. An empty body is treated as {}.
    """
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidJSONBody(str(e))
    if not isinstance(data, dict):
        raise InvalidJSONBody("Request body must be a JSON object.")
    return data


def error_response(error, message, status):
    return JsonResponse({'error': error, 'message': message}, status=status)


def api_login_required(view_func):
    @wraps(view_func)
    def _wrapped(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({'message': 'Not authorized, please log in'}, status=401)
        return view_func(request, *args, **kwargs)
    return _wrapped


def api_staff_required(view_func):
    @wraps(view_func)
    def _wrapped(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({'message': 'Not authorized, please log in'}, status=401)
        if not request.user.is_staff:
            return JsonResponse({'message': 'Not authorized as an admin'}, status=403)
        return view_func(request, *args, **kwargs)
    return _wrapped
