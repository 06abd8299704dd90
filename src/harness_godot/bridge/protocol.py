PROTOCOL_VERSION = "1.0"

ERROR_CODES = {
    "ERROR": 1,
    "INVALID_INPUT": 2,
    "INVALID_PATH": 3,
    "NOT_FOUND": 4,
    "NO_EXECUTABLE_FOUND": 5,
    "SPAWN_FAILURE": 6,
    "NON_ZERO_EXIT": 7,
    "ENGINE_REPORTED_ERROR": 8,
    "PARSE_FAILURE": 9,
    "TIMEOUT": 10,
    "ALREADY_RUNNING": 11,
    "NO_ACTIVE_PROCESS": 12,
    "BRIDGE_UNAVAILABLE": 13,
}
