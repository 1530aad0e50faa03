import codecs
import uuid

import dill

import constants
import custom_exceptions


def serialize(obj) -> str:
    return codecs.encode(dill.dumps(obj), "base64").decode()


def deserialize(obj: str):
    return dill.loads(codecs.decode(obj.encode(), "base64"))


def generate_id() -> str:
    return str(uuid.uuid4())


def calculate_priority(priority: int) -> int:
    """Scale a task priority onto the 0-255 range used by queue-style transports.

    Args:
        priority (int): Task priority, normally a TaskPriority member

    Returns:
        int: 0 for LOW and below, 255 for HIGH and above, linear in between
    """
    if priority <= constants.LOW:
        return 0

    if priority >= constants.HIGH:
        return 255

    return int(round((priority / constants.HIGH) * 255))


def parse_server(server: str) -> tuple[str, int]:
    """Split a "host:port" string.

    Raises:
        InvalidArguments: if the string has no port or the port is not a number
    """
    host, sep, port = server.strip().rpartition(":")
    if not sep or not host:
        raise custom_exceptions.InvalidArguments(f"Invalid server address '{server}'")

    try:
        return host, int(port)

    except ValueError:
        raise custom_exceptions.InvalidArguments(f"Invalid server port in '{server}'")


def parse_servers(servers) -> list[tuple[str, int]]:
    """Parse a comma separated string or a list of "host:port" entries."""
    if isinstance(servers, str):
        servers = [s for s in servers.split(",") if s.strip()]

    return [parse_server(server) for server in servers]
