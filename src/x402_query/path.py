import fnmatch
import re


def path_is_match(path: str | list[str], request_path: str) -> bool:
    """Check whether ``request_path`` matches ``path``.

    ``path`` may be an exact path, a glob (``/api/*``), a ``regex:`` prefixed
    regular expression, or a list of any of these.
    """
    if isinstance(path, list):
        return any(path_is_match(p, request_path) for p in path)
    if not isinstance(path, str):
        return False

    if path.startswith("regex:"):
        return re.match(path[len("regex:"):], request_path) is not None

    if any(c in path for c in "*?["):
        return fnmatch.fnmatchcase(request_path, path)

    return path == request_path
