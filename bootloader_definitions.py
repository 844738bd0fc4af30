from enum import Enum

MIN_BATTERY_VOLTS = 11.5
MIN_BOOTSTRAP_VOLTS = 11.5
MIN_PROGRAMMING_VOLTS = 19.5

FLASH_BLOCK_SIZE = 512
EEPROM_BLOCK_SIZE = 512
EEPROM_SIZE_BYTES = 0x200

class Bootloader (Enum):
	EMPTY = 0x00
	SBEC3_SBEC3PLUS_128K = 0x01
	SBEC3_128K_CUSTOM = 0x02
	SBEC3A_3APLUS_3B_256K = 0x03
	SBEC3_256K_CUSTOM = 0x04
	EATX3_128K = 0x05
	EATX3A_256K = 0x06
	JTEC = 0x07
	JTECPLUS_256K = 0x08

BOOTLOADER_NAMES = {
	Bootloader.EMPTY: 'empty',
	Bootloader.SBEC3_SBEC3PLUS_128K: 'SBEC3/SBEC3+ (128k)',
	Bootloader.SBEC3_128K_CUSTOM: 'SBEC3 (128k) custom',
	Bootloader.SBEC3A_3APLUS_3B_256K: 'SBEC3A/3A+/3B (256k)',
	Bootloader.SBEC3_256K_CUSTOM: 'SBEC3A (256k) custom',
	Bootloader.EATX3_128K: 'EATX3 (128k)',
	Bootloader.EATX3A_256K: 'EATX3A (256k)',
	Bootloader.JTEC: 'JTEC (256k)',
	Bootloader.JTECPLUS_256K: 'JTEC+ (256k)',
}

DEFAULT_BOOTLOADER = Bootloader.SBEC3A_3APLUS_3B_256K

def is_jtec (bootloader: Bootloader) -> bool:
	return bootloader in (Bootloader.JTEC, Bootloader.JTECPLUS_256K)

class WorkerFunction (Enum):
	EMPTY = 0x00
	PART_NUMBER_READ = 0x01
	FLASH_ID = 0x02
	FLASH_READ = 0x03
	FLASH_ERASE = 0x04
	FLASH_WRITE = 0x05
	VERIFY_FLASH_CHECKSUM = 0x06
	EEPROM_READ = 0x07
	EEPROM_WRITE = 0x08

WORKER_FUNCTION_NAMES = {
	WorkerFunction.EMPTY: 'empty',
	WorkerFunction.PART_NUMBER_READ: 'part number read',
	WorkerFunction.FLASH_ID: 'flash ID',
	WorkerFunction.FLASH_READ: 'flash read',
	WorkerFunction.FLASH_ERASE: 'flash erase',
	WorkerFunction.FLASH_WRITE: 'flash write',
	WorkerFunction.VERIFY_FLASH_CHECKSUM: 'verify flash checksum',
	WorkerFunction.EEPROM_READ: 'EEPROM read',
	WorkerFunction.EEPROM_WRITE: 'EEPROM write',
}

# these keep running inside the ECU until an explicit exit
BLOCK_WORKER_FUNCTIONS = (
	WorkerFunction.FLASH_READ,
	WorkerFunction.FLASH_WRITE,
	WorkerFunction.EEPROM_READ,
	WorkerFunction.EEPROM_WRITE,
)

class BootloaderError (Enum):
	OK = 0x00
	NO_RESPONSE_TO_MAGIC_BYTE = 0x01
	UNEXPECTED_RESPONSE_TO_MAGIC_BYTE = 0x02
	SECURITY_SEED_RESPONSE_TIMEOUT = 0x03
	SECURITY_SEED_CHECKSUM_ERROR = 0x04
	SECURITY_KEY_STATUS_TIMEOUT = 0x05
	SECURITY_KEY_NOT_ACCEPTED = 0x06
	START_BOOTLOADER_TIMEOUT = 0x07
	UNEXPECTED_BOOTLOADER_STATUS_BYTE = 0x08

BOOTLOADER_ERROR_MESSAGES = {
	BootloaderError.NO_RESPONSE_TO_MAGIC_BYTE: 'no response to magic byte',
	BootloaderError.UNEXPECTED_RESPONSE_TO_MAGIC_BYTE: 'unexpected response to magic byte',
	BootloaderError.SECURITY_SEED_RESPONSE_TIMEOUT: 'security seed response timeout',
	BootloaderError.SECURITY_SEED_CHECKSUM_ERROR: 'security seed checksum error',
	BootloaderError.SECURITY_KEY_STATUS_TIMEOUT: 'security key status timeout',
	BootloaderError.SECURITY_KEY_NOT_ACCEPTED: 'security key not accepted',
	BootloaderError.START_BOOTLOADER_TIMEOUT: 'start bootloader timeout',
	BootloaderError.UNEXPECTED_BOOTLOADER_STATUS_BYTE: 'unexpected bootloader status byte',
}

class WorkerFunctionError (Enum):
	OK = 0x00
	NO_RESPONSE_TO_PING = 0x01
	UPLOAD_INTERRUPTED = 0x02
	UNEXPECTED_UPLOAD_RESULT = 0x03

WORKER_FUNCTION_ERROR_MESSAGES = {
	WorkerFunctionError.NO_RESPONSE_TO_PING: 'no response to ping',
	WorkerFunctionError.UPLOAD_INTERRUPTED: 'upload interrupted',
	WorkerFunctionError.UNEXPECTED_UPLOAD_RESULT: 'unexpected upload result',
}

class SciId (Enum):
	'''
	First byte of an SCI-bus message coming back from the bootstrapped ECU
	'''
	WRITE_ERROR = 0x01
	BOOTSTRAP_BAUDRATE_SET = 0x06
	UPLOAD_WORKER_FUNCTION_RESULT = 0x11
	START_WORKER_FUNCTION = 0x21
	EXIT_WORKER_FUNCTION = 0x22
	BOOTSTRAP_SEED_KEY_REQUEST = 0x24
	BOOTSTRAP_SEED_KEY_RESPONSE = 0x26
	FLASH_BLOCK_WRITE = 0x31
	FLASH_BLOCK_READ = 0x34
	EEPROM_BLOCK_WRITE = 0x37
	EEPROM_BLOCK_READ = 0x3A
	START_BOOTLOADER = 0x47
	UPLOAD_BOOTLOADER = 0x4C
	BLOCK_SIZE_ERROR = 0x80
	ERASE_ERROR_81 = 0x81
	ERASE_ERROR_82 = 0x82
	ERASE_ERROR_83 = 0x83
	OFFSET_ERROR = 0x84
	BOOTSTRAP_MODE_NOT_PROTECTED = 0xDB

ERASE_ERRORS = (SciId.ERASE_ERROR_81.value, SciId.ERASE_ERROR_82.value, SciId.ERASE_ERROR_83.value)

SEED_KEY_ACCEPTED = b'\x26\xD0\x67\xC2\x1F'
BOOTSTRAP_NOT_PROTECTED = b'\xDB\x2F\xD8\x3E\x23'

class BlockOpcode (Enum):
	FLASH_WRITE = 0x30
	FLASH_READ = 0x33
	EEPROM_WRITE = 0x36
	EEPROM_READ = 0x39

class FlashManufacturer (Enum):
	ST = 0x20
	CATALYST = 0x31
	INTEL = 0x89
	TEXAS_INSTRUMENTS = 0x97

FLASH_MANUFACTURER_NAMES = {
	FlashManufacturer.ST: 'ST',
	FlashManufacturer.CATALYST: 'CATALYST',
	FlashManufacturer.INTEL: 'Intel',
	FlashManufacturer.TEXAS_INSTRUMENTS: 'Texas Instruments',
}

# index is what the scanner firmware expects next to the worker function id
FLASH_CHIP_TABLE = [
	{
		'index': 1,
		'name': 'M28F102',
		'manufacturer': FlashManufacturer.ST,
		'chip_ids': [0x50],
		'size_bytes': 131072, # (128 KiB)
	},
	{
		'index': 2,
		'name': 'CAT28F102',
		'manufacturer': FlashManufacturer.CATALYST,
		'chip_ids': [0x51],
		'size_bytes': 131072,
	},
	{
		'index': 3,
		'name': 'N28F010',
		'manufacturer': FlashManufacturer.INTEL,
		'chip_ids': [0xB4],
		'size_bytes': 131072,
	},
	{
		'index': 4,
		'name': 'N28F020',
		'manufacturer': FlashManufacturer.INTEL,
		'chip_ids': [0xBD],
		'size_bytes': 262144, # (256 KiB)
	},
	{
		'index': 5,
		'name': 'M28F210',
		'manufacturer': FlashManufacturer.ST,
		'chip_ids': [0xE0],
		'size_bytes': 262144,
	},
	{
		'index': 6,
		'name': 'M28F220',
		'manufacturer': FlashManufacturer.ST,
		'chip_ids': [0xE6],
		'size_bytes': 262144,
	},
	{
		'index': 7,
		'name': 'M28F200',
		'manufacturer': FlashManufacturer.ST,
		'chip_ids': [0x74, 0x75], # top / bottom boot block
		'size_bytes': 262144,
	},
	{
		'index': 8,
		'name': 'N28F010 (128k+128k)',
		'manufacturer': FlashManufacturer.INTEL,
		'chip_ids': [], # two chips on JTEC boards, never reported by the ID routine
		'size_bytes': 262144,
	},
	{
		'index': 9,
		'name': 'TMS28F210',
		'manufacturer': FlashManufacturer.TEXAS_INSTRUMENTS,
		'chip_ids': [0xE5],
		'size_bytes': 262144,
	},
]

JTEC_DEFAULT_FLASH_CHIP_INDEX = 8
