# Author: Omi Shrestha

"""
Configuration for the rover controller.
Plain constants; a few can be overridden through ROVER_* environment variables.
"""

import os

# =============================================================================
# Scanning
# =============================================================================

SCAN_SECONDS = 7                 # Fixed scan window
SCAN_SERVICE_UUIDS = []          # Empty list = report every peripheral
SCAN_ALLOW_DUPLICATES = True

# =============================================================================
# Connection
# =============================================================================

# Let bonding finish before asking the link for its services
CONNECT_SETTLE_SECONDS = 0.9
BLE_CONNECT_TIMEOUT = 15.0

# =============================================================================
# HM-10 style UART service used by the rover firmware
# =============================================================================

CONTROL_SERVICE_UUID = "ffe0"
CONTROL_CHAR_UUID = "ffe1"

# =============================================================================
# Command bytes
# =============================================================================

OFFSET_LEFT = 192
OFFSET_RIGHT = 128
OFFSET_BACKWARD = 64
OFFSET_FORWARD = 0

RADAR_SWEEP_VALUE = 52

SPEED_MIN = 0
SPEED_MAX = 255
SPEED_DEFAULT = 120
SPEED_DIVISOR = 5

# =============================================================================
# Radar
# =============================================================================

RADAR_ANGLES = (30, 60, 90, 120, 150)
RADAR_NEAR_MAX = 10
RADAR_MID_MAX = 20
RADAR_FAR_MAX = 30

# =============================================================================
# Presentation
# =============================================================================

HTTP_HOST = os.environ.get("ROVER_HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.environ.get("ROVER_HTTP_PORT", "5000"))
LOG_LEVEL = os.environ.get("ROVER_LOG_LEVEL", "INFO").upper()
RUN_ASYNC_TIMEOUT = 30.0
