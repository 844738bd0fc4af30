import logging, importlib
from bootloader_definitions import (
	WorkerFunction, WorkerFunctionError, BootloaderError, SciId, BlockOpcode,
	SEED_KEY_ACCEPTED, BOOTSTRAP_NOT_PROTECTED, EEPROM_SIZE_BYTES
)
from .chip import identify_flash_chip, FlashChipIdentificationException
from .packet import Packet, Bus, Command, SettingsMode, RequestMode, ResponseMode, DebugMode, format_packet
from .worker import PART_NUMBER_MIN_LENGTH

logger = logging.getLogger(__name__)

class TransportLoadException (Exception):
	pass

class Transport:
	'''
	What the engine needs from the scanner link: fire-and-forget send() plus
	a receiver for inbound packets. Transports that know when a packet actually
	left the host set confirms_transmit and call the transmitted callback.
	'''
	confirms_transmit = False

	def __init__ (self):
		self.receiver = None
		self.transmitted = None

	def set_receiver (self, receiver, transmitted=None):
		self.receiver = receiver
		self.transmitted = transmitted

	def open (self):
		pass

	def close (self):
		pass

	def send (self, packet: Packet):
		raise NotImplementedError

	def set_bus_speed (self, high_speed: bool):
		raise NotImplementedError

	def deliver (self, packet: Packet):
		logger.debug(format_packet(packet, 'Incoming'))
		if self.receiver:
			self.receiver(packet)

def load_transport (name: str, options: dict = None) -> Transport:
	''' name is either "virtual" or "package.module:ClassName" '''
	options = options or {}
	if name == 'virtual':
		return VirtualECU(**options)

	module_name, _, class_name = name.partition(':')
	if not class_name:
		raise TransportLoadException('Transport must be "virtual" or "module:ClassName", got {}'.format(name))
	try:
		module = importlib.import_module(module_name)
	except ImportError as e:
		raise TransportLoadException('Unable to import {}: {}'.format(module_name, e))
	try:
		transport_class = getattr(module, class_name)
	except AttributeError:
		raise TransportLoadException('{} has no transport named {}'.format(module_name, class_name))
	return transport_class(**options)

class VirtualECU (Transport):
	'''
	In-memory scanner with a bootstrapped SBEC/JTEC behind it. Answers synchronously from send().
	The knobs let tests inject the failures a real bench produces.
	'''
	def __init__ (self, manufacturer_id=0x89, chip_id=0xBD, flash=None, eeprom=None, part_number=b'\x56\x04\x41\x23AB',
			voltages=(12000, 12000, 20000), upload_error=0, bootstrap_error=0, erase_error=None, drop_next=0,
			stale_next=False, block_error=None, confirm_transmit=False):
		super().__init__()
		self.manufacturer_id = manufacturer_id
		self.chip_id = chip_id
		try:
			size = identify_flash_chip(manufacturer_id, chip_id).size_bytes
		except FlashChipIdentificationException:
			size = 262144
		self.flash = bytearray(flash) if flash is not None else bytearray(x & 0xFF for x in range(size))
		self.eeprom = bytearray(eeprom) if eeprom is not None else bytearray((0xFF - x) & 0xFF for x in range(EEPROM_SIZE_BYTES))
		self.part_number = bytes(part_number)
		self.voltages = voltages
		self.upload_error = upload_error
		self.bootstrap_error = bootstrap_error
		self.erase_error = erase_error
		self.drop_next = drop_next
		self.stale_next = stale_next
		self.block_error = block_error
		self.confirms_transmit = confirm_transmit

		self.uploaded = WorkerFunction.EMPTY
		self.running = None
		self.last_block_offset = None
		self.sent = []
		self.timestamp = 0
		self.high_speed = False

	def send (self, packet: Packet):
		logger.debug(format_packet(packet))
		self.sent.append(packet)
		if self.confirms_transmit and self.transmitted:
			self.transmitted()

		if self.drop_next:
			self.drop_next -= 1
			return

		if packet.bus == Bus.USB:
			self._usb(packet)
		elif packet.bus == Bus.PCM and packet.command == Command.MSG_TX:
			self._block(bytes(packet.payload))

	def set_bus_speed (self, high_speed: bool):
		logger.debug('SCI-bus speed: {} baud'.format(62500 if high_speed else 7812.5))
		self.high_speed = high_speed

	def sci (self, data):
		self.timestamp = (self.timestamp + 1) & 0xFFFFFFFF
		self.deliver(Packet(Bus.PCM, Command.MSG_RX, 0x00, self.timestamp.to_bytes(4, 'big') + bytes(data)))

	def prog_volt (self, value: int):
		self.deliver(Packet(Bus.USB, Command.SETTINGS, SettingsMode.SET_PROG_VOLT.value, bytes([value])))

	def _usb (self, packet: Packet):
		if packet.is_a(Bus.USB, Command.REQUEST, RequestMode.ALL_VOLTS):
			payload = b''.join([x.to_bytes(2, 'big') for x in self.voltages])
			self.deliver(Packet(Bus.USB, Command.RESPONSE, ResponseMode.ALL_VOLTS.value, payload))
		elif packet.is_a(Bus.USB, Command.SETTINGS, SettingsMode.SET_PROG_VOLT):
			self.prog_volt(packet.payload[0])
		elif packet.is_a(Bus.USB, Command.DEBUG, DebugMode.INIT_BOOTSTRAP_MODE):
			self._init_bootstrap(packet.payload)
		elif packet.is_a(Bus.USB, Command.DEBUG, DebugMode.UPLOAD_WORKER_FUNCTION):
			self.uploaded = WorkerFunction(packet.payload[0])
			self.deliver(Packet(Bus.USB, Command.DEBUG, DebugMode.UPLOAD_WORKER_FUNCTION.value, bytes([self.upload_error])))
		elif packet.is_a(Bus.USB, Command.DEBUG, DebugMode.START_WORKER_FUNCTION):
			self._start(WorkerFunction(packet.payload[0]))
		elif packet.is_a(Bus.USB, Command.DEBUG, DebugMode.EXIT_WORKER_FUNCTION):
			self.running = None
			self.sci([SciId.EXIT_WORKER_FUNCTION.value])

	def _init_bootstrap (self, payload: bytes):
		if self.bootstrap_error == BootloaderError.OK.value:
			self.sci([SciId.BOOTSTRAP_BAUDRATE_SET.value, 0x55])
			self.sci(SEED_KEY_ACCEPTED)
			self.sci(BOOTSTRAP_NOT_PROTECTED)
			# bootloader image 0x0100-0x010F
			self.sci(bytes([SciId.UPLOAD_BOOTLOADER.value, 0x01, 0x00, 0x01, 0x0F]) + bytes(16))
			self.sci([SciId.START_BOOTLOADER.value, 0x80, 0x00, 0x22])
		self.deliver(Packet(Bus.USB, Command.DEBUG, DebugMode.INIT_BOOTSTRAP_MODE.value, bytes([self.bootstrap_error])))

	def _start (self, worker: WorkerFunction):
		if self.uploaded != worker or self.upload_error != WorkerFunctionError.OK.value:
			return

		if worker == WorkerFunction.PART_NUMBER_READ:
			response = bytearray([0xFF] * PART_NUMBER_MIN_LENGTH)
			response[0] = SciId.START_WORKER_FUNCTION.value
			response[1:1+len(self.part_number)] = self.part_number
			self.sci(response)
		elif worker == WorkerFunction.FLASH_ID:
			self.sci([SciId.START_WORKER_FUNCTION.value, self.manufacturer_id, self.chip_id])
			self.prog_volt(0x00)
		elif worker == WorkerFunction.FLASH_ERASE:
			self.prog_volt(0x40)
			if self.erase_error is None:
				self.flash[:] = bytes([0xFF] * len(self.flash))
				self.sci([SciId.START_WORKER_FUNCTION.value, SciId.EXIT_WORKER_FUNCTION.value])
				self.prog_volt(0x00)
			else:
				self.sci([SciId.START_WORKER_FUNCTION.value, self.erase_error])
		else:
			self.running = worker
			self.sci([SciId.START_WORKER_FUNCTION.value])

	def _block (self, request: bytes):
		if not request:
			return
		opcode = request[0]

		if opcode in (BlockOpcode.FLASH_READ.value, BlockOpcode.FLASH_WRITE.value):
			header = 6
			memory = self.flash
			expected = WorkerFunction.FLASH_READ if opcode == BlockOpcode.FLASH_READ.value else WorkerFunction.FLASH_WRITE
		elif opcode in (BlockOpcode.EEPROM_READ.value, BlockOpcode.EEPROM_WRITE.value):
			header = 5
			memory = self.eeprom
			expected = WorkerFunction.EEPROM_READ if opcode == BlockOpcode.EEPROM_READ.value else WorkerFunction.EEPROM_WRITE
		else:
			return

		if self.running != expected or len(request) < header:
			return

		offset_bytes = request[1:header-2]
		offset = int.from_bytes(offset_bytes, 'big')
		length = int.from_bytes(request[header-2:header], 'big')
		response_id = opcode + 1

		if self.block_error is not None:
			self.sci(bytes([response_id]) + request[1:header] + bytes([self.block_error]))
			return

		if self.stale_next and self.last_block_offset is not None:
			self.stale_next = False
			stale = self.last_block_offset.to_bytes(len(offset_bytes), 'big')
			self.sci(bytes([response_id]) + stale + request[header-2:header] + bytes(memory[self.last_block_offset:self.last_block_offset+length]))
			return

		if opcode in (BlockOpcode.FLASH_WRITE.value, BlockOpcode.EEPROM_WRITE.value):
			memory[offset:offset+length] = request[header:header+length]
		self.last_block_offset = offset
		self.sci(bytes([response_id]) + request[1:header] + bytes(memory[offset:offset+length]))
