from enum import Enum
from dataclasses import dataclass

class Bus (Enum):
	USB = 0x00
	CCD = 0x01
	PCI = 0x02
	PCM = 0x03
	TCM = 0x04

class Command (Enum):
	RESET = 0x00
	HANDSHAKE = 0x01
	STATUS = 0x02
	SETTINGS = 0x03
	REQUEST = 0x04
	RESPONSE = 0x05
	MSG_TX = 0x06
	MSG_RX = 0x07
	DEBUG = 0x0E
	ERROR = 0x0F

class SettingsMode (Enum):
	SET_PROG_VOLT = 0x05

class RequestMode (Enum):
	ALL_VOLTS = 0x06

ResponseMode = RequestMode

class DebugMode (Enum):
	INIT_BOOTSTRAP_MODE = 0x0A
	UPLOAD_WORKER_FUNCTION = 0x0B
	START_WORKER_FUNCTION = 0x0C
	EXIT_WORKER_FUNCTION = 0x0D

class MsgTxMode (Enum):
	SINGLE = 0x02
	SINGLE_VPP = 0x06

# inbound SCI-bus messages are prefixed with a scanner timestamp
TIMESTAMP_LENGTH = 4

@dataclass(frozen=True)
class Packet:
	'''
	One message exchanged with the scanner. Mode is a plain byte, its meaning depends on the command.
	'''
	bus: Bus
	command: Command
	mode: int
	payload: bytes = b''

	def is_a (self, bus: Bus, command: Command, mode: Enum = None) -> bool:
		if self.bus != bus or self.command != command:
			return False
		return mode is None or self.mode == mode.value

	def sci_bytes (self) -> bytes:
		'''
		Payload of a PCM/TCM message without the timestamp
		'''
		return self.payload[TIMESTAMP_LENGTH:]

def format_packet (packet: Packet, direction: str = 'Outgoing') -> str:
	data = ' '.join([hex(x)[2:].zfill(2) for x in packet.payload])
	return 'Packet({}, {}, {}, mode={}, data={})'.format(direction, packet.bus.name, packet.command.name, hex(packet.mode), data)
