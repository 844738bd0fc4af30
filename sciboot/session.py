import logging
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple
from typing_extensions import Self
from bootloader_definitions import Bootloader, WorkerFunction, DEFAULT_BOOTLOADER, EEPROM_SIZE_BYTES, is_jtec
from .chip import FlashChip, AUTODETECT_INDEX
from .packet import Packet
from .scheduler import Timer

class Task (Enum):
	NONE = 0
	CHECK_VOLTAGES = 1
	READ_PART_NUMBER = 2
	DETECT_FLASH_MEMORY_TYPE = 3
	BACKUP_FLASH_MEMORY = 4
	READ_FLASH_MEMORY = 5
	BACKUP_EEPROM = 6
	ERASE_FLASH_MEMORY = 7
	WRITE_FLASH_MEMORY = 8
	VERIFY_FLASH_CHECKSUM = 9
	UPDATE_EEPROM = 10
	READ_EEPROM = 11
	WRITE_EEPROM = 12
	FINISH_FLASH_READ = 13
	FINISH_FLASH_WRITE = 14
	FINISH_EEPROM_READ = 15
	FINISH_EEPROM_WRITE = 16
	INIT_BOOTSTRAP_MODE = 17
	FINISH_BOOTSTRAP = 18

# a block worker may still be running inside the ECU in these, cleanup has to exit it
EXIT_ON_CANCEL_TASKS = (
	Task.BACKUP_FLASH_MEMORY,
	Task.READ_FLASH_MEMORY,
	Task.WRITE_FLASH_MEMORY,
	Task.BACKUP_EEPROM,
	Task.UPDATE_EEPROM,
	Task.READ_EEPROM,
	Task.WRITE_EEPROM,
)

class Operation (Enum):
	BOOTSTRAP = 'bootstrap'
	READ_FLASH = 'read flash'
	WRITE_FLASH = 'write flash'
	READ_EEPROM = 'read EEPROM'
	WRITE_EEPROM = 'write EEPROM'

class UnsupportedOperationException (Exception):
	pass

class SessionBusyException (Exception):
	pass

@dataclass(frozen=True)
class Timing:
	next_request_ms: int = 25
	rx_timeout_ms: int = 2000
	rx_timeout_erase_ms: int = 10000 # erasing takes some time
	rx_timeout_eeprom_write_ms: int = 5000
	tx_timeout_ms: int = 2000
	bootstrap_timeout_ms: int = 10000
	max_retries: int = 9

	def rx_timeout_for (self, task: Task) -> int:
		if task == Task.ERASE_FLASH_MEMORY:
			return self.rx_timeout_erase_ms
		if task == Task.WRITE_EEPROM:
			return self.rx_timeout_eeprom_write_ms
		if task == Task.INIT_BOOTSTRAP_MODE:
			return self.bootstrap_timeout_ms
		return self.rx_timeout_ms

@dataclass(frozen=True)
class SessionConfig:
	'''
	Everything the operator chose before the session started. Never changes while it runs.
	flash_output / eeprom_output receive dumps for read sessions and backups for flash writing.
	'''
	operation: Operation
	bootloader: Bootloader = DEFAULT_BOOTLOADER
	flash_chip: Optional[FlashChip] = None
	backup_flash: bool = True
	backup_eeprom: bool = True
	flash_image: Optional[bytes] = None
	eeprom_image: Optional[bytes] = None
	flash_output: Optional[str] = None
	eeprom_output: Optional[str] = None
	confirms_transmit: bool = False
	timing: Timing = field(default_factory=Timing)

def validate_config (config: SessionConfig):
	jtec = is_jtec(config.bootloader)

	if config.operation == Operation.READ_EEPROM and jtec:
		raise UnsupportedOperationException('JTEC EEPROM reading is not supported yet.')
	if config.operation == Operation.WRITE_EEPROM and jtec:
		raise UnsupportedOperationException('JTEC EEPROM writing is not supported yet.')

	if config.operation == Operation.WRITE_FLASH:
		if not config.flash_image:
			raise ValueError('Flash image is required for flash writing')
		if config.flash_chip and len(config.flash_image) != config.flash_chip.size_bytes:
			raise ValueError('Flash file size ({} bytes) must be equal to the flash memory chip size ({} bytes)!'.format(len(config.flash_image), config.flash_chip.size_bytes))
		if config.backup_flash and not config.flash_output:
			raise ValueError('Flash backup requested without a destination file')
		if config.backup_eeprom and not jtec and not config.eeprom_output:
			raise ValueError('EEPROM backup requested without a destination file')

	if config.operation == Operation.WRITE_EEPROM:
		if config.eeprom_image is None or len(config.eeprom_image) != EEPROM_SIZE_BYTES:
			raise ValueError('Valid EEPROM size is {} bytes.'.format(EEPROM_SIZE_BYTES))

	if config.operation == Operation.READ_FLASH and not config.flash_output:
		raise ValueError('Flash reading requires a destination file')
	if config.operation == Operation.READ_EEPROM and not config.eeprom_output:
		raise ValueError('EEPROM reading requires a destination file')

@dataclass(frozen=True)
class Success:
	task: Task
	key_cycle_required: bool = False

@dataclass(frozen=True)
class Aborted:
	reason: str
	indeterminate: bool = False

@dataclass(frozen=True)
class Cancelled:
	indeterminate: bool = False

@dataclass(frozen=True)
class SessionState:
	config: Optional[SessionConfig] = None
	task: Task = Task.NONE
	worker: WorkerFunction = WorkerFunction.EMPTY
	worker_running: bool = False
	pending_worker: Optional[WorkerFunction] = None
	flash_chip: Optional[FlashChip] = None
	cursor: int = 0
	total: int = 0
	rx_retries: int = 0
	tx_retries: int = 0
	request_id: int = 0
	outstanding: Tuple[Packet, ...] = ()
	awaiting: bool = False
	awaiting_operator: bool = False
	bootstrap_step: int = 0
	erase_ok: bool = False
	destructive: bool = False
	part_number: Optional[str] = None
	finished: bool = False
	outcome: object = None

	def evolve (self, **changes) -> Self:
		return replace(self, **changes)

	@property
	def active (self) -> bool:
		return self.task != Task.NONE and not self.finished

	@property
	def chip_index (self) -> int:
		if self.flash_chip is None:
			return AUTODETECT_INDEX
		return self.flash_chip.index

# events, fed to the machine strictly in arrival order

@dataclass(frozen=True)
class TimerExpired:
	timer: Timer
	request_id: int

@dataclass(frozen=True)
class PacketReceived:
	packet: Packet

@dataclass(frozen=True)
class TransmitConfirmed:
	pass

@dataclass(frozen=True)
class CancelRequested:
	pass

@dataclass(frozen=True)
class OperatorAcknowledged:
	accepted: bool

@dataclass(frozen=True)
class Fault:
	reason: str

# effects, executed by the engine after each step

@dataclass(frozen=True)
class Send:
	packet: Packet

@dataclass(frozen=True)
class ArmTimer:
	timer: Timer
	delay_ms: int
	request_id: int

@dataclass(frozen=True)
class CancelTimer:
	timer: Timer

@dataclass(frozen=True)
class TruncateFile:
	filename: str

@dataclass(frozen=True)
class AppendFile:
	filename: str
	data: bytes

@dataclass(frozen=True)
class Status:
	message: str
	level: int = logging.INFO
	blank_line: bool = False

@dataclass(frozen=True)
class Progress:
	worker: WorkerFunction
	cursor: int
	total: int

@dataclass(frozen=True)
class OperatorPrompt:
	message: str

@dataclass(frozen=True)
class BusSpeed:
	''' Scanner SCI-bus speed, bootstrap mode talks at 62500 baud instead of 7812.5 '''
	high_speed: bool

@dataclass(frozen=True)
class Finished:
	outcome: object
