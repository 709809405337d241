# Small helpers shared by the test modules
import datetime
import json

from backoffice.utils.timeutils import UTC


def at(day, hour, minute=0, tz=UTC):
    """Aware instant for a wall-clock time on `day`."""
    return datetime.datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz)


def post_json(client, url, payload=None, headers=None):
    return client.post(
        url,
        data=json.dumps(payload or {}),
        content_type="application/json",
        headers=headers or {},
    )


def patch_json(client, url, payload=None, headers=None):
    return client.patch(
        url,
        data=json.dumps(payload or {}),
        content_type="application/json",
        headers=headers or {},
    )


def body(response):
    return json.loads(response.data)
