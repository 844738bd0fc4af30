from dataclasses import dataclass
from bootloader_definitions import FLASH_CHIP_TABLE, FLASH_MANUFACTURER_NAMES, FlashManufacturer, Bootloader, JTEC_DEFAULT_FLASH_CHIP_INDEX

AUTODETECT_INDEX = 0

@dataclass(frozen=True)
class FlashChip:
	index: int
	name: str
	manufacturer: FlashManufacturer
	size_bytes: int

	def describe (self) -> str:
		return '{} {} ({} kB)'.format(FLASH_MANUFACTURER_NAMES[self.manufacturer], self.name, self.size_bytes // 1024)

class FlashChipIdentificationException (Exception):
	pass

def _chip (definition: dict) -> FlashChip:
	return FlashChip(
		index=definition['index'],
		name=definition['name'],
		manufacturer=definition['manufacturer'],
		size_bytes=definition['size_bytes']
	)

def flash_chip_by_index (index: int) -> FlashChip:
	for definition in FLASH_CHIP_TABLE:
		if definition['index'] == index:
			return _chip(definition)
	raise FlashChipIdentificationException('No flash chip with index {}'.format(index))

def identify_flash_chip (manufacturer_id: int, chip_id: int) -> FlashChip:
	try:
		manufacturer = FlashManufacturer(manufacturer_id)
	except ValueError:
		raise FlashChipIdentificationException('Unknown flash manufacturer {}'.format(hex(manufacturer_id)))

	for definition in FLASH_CHIP_TABLE:
		if definition['manufacturer'] == manufacturer and chip_id in definition['chip_ids']:
			return _chip(definition)
	raise FlashChipIdentificationException('Unknown {} flash chip {}'.format(FLASH_MANUFACTURER_NAMES[manufacturer], hex(chip_id)))

def default_flash_chip (bootloader: Bootloader):
	'''
	Plain JTEC boards carry two 128k chips that the ID routine can't report, so they get a fixed selection
	'''
	if bootloader == Bootloader.JTEC:
		return flash_chip_by_index(JTEC_DEFAULT_FLASH_CHIP_INDEX)
	return None
