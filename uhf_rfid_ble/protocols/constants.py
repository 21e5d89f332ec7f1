# uhf_rfid_ble/protocols/constants.py

"""
Constants for the generic 0xA0-framed UHF RFID reader protocol spoken over BLE.
"""

# --- Frame Structure Constants ---
FRAME_HEADER: int = 0xA0
HEADER_INDEX = 0
LENGTH_INDEX = 1
OPCODE_INDEX = 2
PAYLOAD_INDEX = 3
MIN_FRAME_LENGTH = 4 # Header, Length, Opcode and at least one more byte

# --- Command Opcodes (Host -> Reader) ---
CMD_START_INVENTORY: int = 0x01
CMD_STOP_INVENTORY: int = 0x02
CMD_INVENTORY_SINGLE: int = 0x03
CMD_READ_TAG: int = 0x39
CMD_WRITE_TAG: int = 0x49
CMD_SET_FILTER: int = 0x8C
CMD_GET_POWER: int = 0x97
CMD_SET_POWER: int = 0x98
CMD_GET_FREQUENCY: int = 0xAA
CMD_SET_FREQUENCY: int = 0xAB

# --- Literal frames for commands without arguments ---
FRAME_START_INVENTORY = bytes([0xA0, 0x04, CMD_START_INVENTORY, 0x89, 0x01])
FRAME_STOP_INVENTORY = bytes([0xA0, 0x03, CMD_STOP_INVENTORY, 0x01])
FRAME_INVENTORY_SINGLE = bytes([0xA0, 0x03, CMD_INVENTORY_SINGLE, 0x22])
FRAME_GET_POWER = bytes([0xA0, 0x03, CMD_GET_POWER, 0x01])
FRAME_GET_FREQUENCY = bytes([0xA0, 0x03, CMD_GET_FREQUENCY, 0x01])

# Length byte of the single-parameter commands (SetPower, SetFrequency)
SINGLE_PARAM_LENGTH: int = 0x04

# Length byte offsets for variable-payload commands (added to payload sizes)
READ_TAG_LENGTH_BASE = 5      # + password bytes
WRITE_TAG_LENGTH_BASE = 6     # + password bytes + data bytes
SET_FILTER_LENGTH_BASE = 7    # + mask bytes

# --- Response Opcodes (Reader -> Host) ---
RESP_INVENTORY_STOPPED: int = 0x01
RESP_TAG_SINGLE: int = 0x22
RESP_READ_RESULT: int = 0x39
RESP_WRITE_RESULT: int = 0x49
RESP_TAG_INVENTORY: int = 0x89
RESP_POWER: int = 0x97
RESP_FREQUENCY: int = 0xAA

TAG_REPORT_OPCODES = frozenset({RESP_TAG_INVENTORY, RESP_TAG_SINGLE})

# Minimum buffer sizes for payload-bearing responses
MIN_TAG_REPORT_LENGTH = 6
MIN_READ_SUCCESS_LENGTH = 6

# --- Status Codes ---
STATUS_SUCCESS: int = 0x10

# --- RSSI ---
# A trailing byte after the EPC is an RSSI magnitude only inside this open range
RSSI_MIN_EXCLUSIVE = 20
RSSI_MAX_EXCLUSIVE = 100

# --- Memory Banks ---
MEM_BANK_RESERVED: int = 0x00
MEM_BANK_EPC: int = 0x01
MEM_BANK_TID: int = 0x02
MEM_BANK_USER: int = 0x03

MEM_BANK_NAMES = {
    "RESERVED": MEM_BANK_RESERVED,
    "EPC": MEM_BANK_EPC,
    "TID": MEM_BANK_TID,
    "USER": MEM_BANK_USER,
}

# --- Access passwords ---
PASSWORD_LENGTH = 4 # bytes
DEFAULT_PASSWORD = "00000000"
