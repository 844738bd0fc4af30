import string
from typing import Optional
from bootloader_definitions import WorkerFunction
from .packet import Packet, Bus, Command, DebugMode

PART_NUMBER_MIN_LENGTH = 30
PART_NUMBER_OFFSETS = (1, 21)

def _debug_packet (mode: DebugMode, worker: WorkerFunction, chip_index: int) -> Packet:
	return Packet(Bus.USB, Command.DEBUG, mode.value, bytes([worker.value, chip_index]))

def upload_packet (worker: WorkerFunction, chip_index: int) -> Packet:
	return _debug_packet(DebugMode.UPLOAD_WORKER_FUNCTION, worker, chip_index)

def start_packet (worker: WorkerFunction, chip_index: int) -> Packet:
	return _debug_packet(DebugMode.START_WORKER_FUNCTION, worker, chip_index)

def exit_packet (worker: WorkerFunction, chip_index: int) -> Packet:
	return _debug_packet(DebugMode.EXIT_WORKER_FUNCTION, worker, chip_index)

def parse_part_number (response: bytes) -> Optional[str]:
	'''
	Part number is stored as 4 BCD-ish bytes followed by a two letter revision,
	either at the primary or the fallback location. 0xFF marks an empty location.
	Missing revision defaults to "99".
	'''
	if len(response) < PART_NUMBER_MIN_LENGTH:
		return None

	for offset in PART_NUMBER_OFFSETS:
		if response[offset] == 0xFF:
			continue
		part_number = response[offset:offset+4].hex().upper()
		revision = ''.join([chr(x) for x in response[offset+4:offset+6]])
		if len(revision) == 2 and all(x in string.ascii_uppercase for x in revision):
			part_number += revision
		else:
			part_number += '99'
		return part_number
	return None

def parse_flash_id (response: bytes):
	if len(response) < 3:
		return None
	return response[1], response[2]
