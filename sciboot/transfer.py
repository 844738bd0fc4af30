from enum import Enum
from dataclasses import dataclass
from bootloader_definitions import BlockOpcode, SciId, FLASH_BLOCK_SIZE, EEPROM_BLOCK_SIZE, EEPROM_SIZE_BYTES
from .packet import Packet, Bus, Command, MsgTxMode

@dataclass(frozen=True)
class BlockLayout:
	'''
	Shape of the block messages for one memory.
	Requests are [opcode, offset..., len_hi, len_lo, data...], responses echo the same header.
	'''
	name: str
	offset_length: int
	block_size: int
	read_opcode: BlockOpcode
	write_opcode: BlockOpcode
	read_response: SciId
	write_response: SciId

	@property
	def header_length (self) -> int:
		return 1 + self.offset_length + 2

FLASH = BlockLayout(
	name='Flash',
	offset_length=3,
	block_size=FLASH_BLOCK_SIZE,
	read_opcode=BlockOpcode.FLASH_READ,
	write_opcode=BlockOpcode.FLASH_WRITE,
	read_response=SciId.FLASH_BLOCK_READ,
	write_response=SciId.FLASH_BLOCK_WRITE
)

EEPROM = BlockLayout(
	name='EEPROM',
	offset_length=2,
	block_size=EEPROM_BLOCK_SIZE,
	read_opcode=BlockOpcode.EEPROM_READ,
	write_opcode=BlockOpcode.EEPROM_WRITE,
	read_response=SciId.EEPROM_BLOCK_READ,
	write_response=SciId.EEPROM_BLOCK_WRITE
)

class BlockStatus (Enum):
	IGNORED = 'ignored' # too short to carry a header
	ACCEPTED = 'accepted'
	STALE = 'stale' # offset doesn't match the outstanding request
	FAILED = 'failed'

BLOCK_ERRORS = {
	SciId.WRITE_ERROR.value: 'Write error',
	SciId.BLOCK_SIZE_ERROR.value: 'Invalid block size',
	SciId.OFFSET_ERROR.value: 'Invalid offset',
}

@dataclass(frozen=True)
class BlockResponse:
	status: BlockStatus
	offset: bytes = b''
	length: int = 0
	data: bytes = b''
	error: str = None

def offset_bytes (layout: BlockLayout, offset: int) -> bytes:
	return offset.to_bytes(layout.offset_length, 'big')

def build_request (layout: BlockLayout, opcode: BlockOpcode, offset: int, data: bytes = b'') -> bytes:
	return bytes([opcode.value]) + offset_bytes(layout, offset) + layout.block_size.to_bytes(2, 'big') + bytes(data)

def read_request (layout: BlockLayout, offset: int) -> bytes:
	return build_request(layout, layout.read_opcode, offset)

def write_request (layout: BlockLayout, offset: int, image: bytes) -> bytes:
	return build_request(layout, layout.write_opcode, offset, image[offset:offset+layout.block_size])

def request_packet (payload: bytes, vpp: bool = False) -> Packet:
	mode = MsgTxMode.SINGLE_VPP if vpp else MsgTxMode.SINGLE
	return Packet(Bus.PCM, Command.MSG_TX, mode.value, payload)

def describe_error (status_byte: int) -> str:
	return BLOCK_ERRORS.get(status_byte, 'Unknown error')

def check_response (layout: BlockLayout, response: bytes, request: bytes) -> BlockResponse:
	'''
	Classify a block read/write response against the request it should answer.
	The echoed length must match what actually arrived, then the echoed offset must
	match the request, anything else is a stale or duplicate answer.
	'''
	header_length = layout.header_length
	if len(response) < header_length + 1:
		return BlockResponse(BlockStatus.IGNORED)

	offset = bytes(response[1:1+layout.offset_length])
	length = int.from_bytes(response[1+layout.offset_length:header_length], 'big')
	data = bytes(response[header_length:])

	valid = len(data) == length
	if layout is EEPROM:
		valid = valid and offset[0] < (EEPROM_SIZE_BYTES >> 8)

	if not valid:
		return BlockResponse(BlockStatus.FAILED, offset, length, data, describe_error(response[-1]))

	# a well formed answer to some other request
	if offset != bytes(request[1:1+layout.offset_length]) or length != layout.block_size:
		return BlockResponse(BlockStatus.STALE, offset, length, data)

	return BlockResponse(BlockStatus.ACCEPTED, offset, length, data)

def describe_block (verb: str, block: BlockResponse) -> str:
	return '{} offset: {}. Size: {}.'.format(verb, block.offset.hex(' ').upper(), block.length.to_bytes(2, 'big').hex(' ').upper())

def progress_text (cursor: int, total: int) -> str:
	percent = round(cursor / total * 100) if total else 0
	return '{}% ({}/{} bytes)'.format(percent, cursor, total)
