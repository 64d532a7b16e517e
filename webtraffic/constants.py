"""
Web Traffic Constants - 3GPP/NGMN web browsing model

Default values for the HTTP traffic sessions and the random
distributions of the object-size/delay provider.
"""

# Ports
HTTP_PORT = 80

# Request wire format
REQUEST_HEADER_LEN = 5               # 1 byte kind + 4 byte declared length
DEFAULT_REQUEST_SIZE = 350           # bytes per client request

# MTU (bytes)
LOW_MTU_SIZE = 536
HIGH_MTU_SIZE = 1460
HIGH_MTU_PROBABILITY = 0.76

# Server
DEFAULT_RESPONSE_DELAY = 0.0         # seconds

# Main object size - truncated log-normal (bytes)
MAIN_OBJECT_SIZE_MEAN = 10710
MAIN_OBJECT_SIZE_STD_DEV = 25032
MAIN_OBJECT_SIZE_MIN = 100
MAIN_OBJECT_SIZE_MAX = 2000000

# Embedded object size - truncated log-normal (bytes)
EMBEDDED_OBJECT_SIZE_MEAN = 7758
EMBEDDED_OBJECT_SIZE_STD_DEV = 126168
EMBEDDED_OBJECT_SIZE_MIN = 50
EMBEDDED_OBJECT_SIZE_MAX = 2000000

# Number of embedded objects per page - truncated Pareto
NUM_OF_EMBEDDED_OBJECTS_SCALE = 2
NUM_OF_EMBEDDED_OBJECTS_SHAPE = 1.1
NUM_OF_EMBEDDED_OBJECTS_MAX = 55

# Delays - exponential (seconds)
READING_TIME_MEAN = 30.0
PARSING_TIME_MEAN = 0.13

# Connect retry (disabled by default)
DEFAULT_CONNECT_RETRY_ATTEMPTS = 0
DEFAULT_CONNECT_RETRY_BACKOFF = 1.0  # seconds
DEFAULT_CONNECT_RETRY_MULTIPLIER = 2.0

# Simulated transport
DEFAULT_LINK_DELAY = 0.001           # seconds, one way
DEFAULT_SEND_BUFFER_SIZE = 131072    # bytes
EPHEMERAL_PORT_MIN = 49153
EPHEMERAL_PORT_MAX = 65535
