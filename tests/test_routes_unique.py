from src.backend.app.main import app


def _route_keys():
    for r in getattr(app.router, "routes", []):
        path = getattr(r, "path", None)
        methods = set(getattr(r, "methods", set()) or set())
        methods.discard("HEAD")
        yield (path, tuple(sorted(methods)))


def test_routes_are_unique_by_path_and_method():
    seen = set()
    dups = []
    for key in _route_keys():
        if key in seen:
            dups.append(key)
        else:
            seen.add(key)
    assert not dups, f"Duplicate routes detected: {dups}"


def test_public_surface_is_mounted():
    keys = set(_route_keys())
    for path in ("/webhooks/whatsapp", "/whatsapp-webhook"):
        assert (path, ("GET",)) in keys
        assert (path, ("POST",)) in keys
    for path in (
        "/onboarding/transition",
        "/onboarding/intake",
        "/onboarding/status",
        "/onboarding/dashboard",
        "/operational/upsert",
        "/operational/list",
        "/operational/delete",
        "/reminders/run",
    ):
        assert (path, ("POST",)) in keys, path
