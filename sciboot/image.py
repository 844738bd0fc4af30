import os, crcmod
from datetime import datetime
from bootloader_definitions import EEPROM_SIZE_BYTES
from .chip import FlashChip

FLASH_IMAGE_SIZES = (131072, 262144)

class ImageSizeException (Exception):
	pass

def _read (filename: str) -> bytes:
	with open(filename, 'rb') as file:
		return file.read()

def load_flash_image (filename: str, chip: FlashChip = None) -> bytes:
	payload = _read(filename)
	if chip is not None:
		if len(payload) != chip.size_bytes:
			raise ImageSizeException('Flash file size ({} bytes) must be equal to the flash memory chip size ({} bytes)!'.format(len(payload), chip.size_bytes))
	elif len(payload) not in FLASH_IMAGE_SIZES:
		raise ImageSizeException('Flash file size ({} bytes) is not a valid flash memory size.'.format(len(payload)))
	return payload

def load_eeprom_image (filename: str) -> bytes:
	payload = _read(filename)
	if len(payload) != EEPROM_SIZE_BYTES:
		raise ImageSizeException('Valid EEPROM size is {} bytes.'.format(EEPROM_SIZE_BYTES))
	return payload

def fingerprint (payload: bytes, init: int = 0) -> int:
	crc16 = crcmod.mkCrcFun(0x18005, initCrc=init)
	return crc16(bytes(payload))

def describe_image (payload: bytes) -> str:
	return '{} bytes, CRC16 {}'.format(len(payload), hex(fingerprint(payload)))

def default_output_path (directory: str, kind: str, now: datetime = None) -> str:
	''' kind is flash or eeprom '''
	now = now or datetime.now()
	return os.path.join(directory, 'pcm_{}_{}.bin'.format(kind, now.strftime('%Y%m%d_%H%M%S')))
