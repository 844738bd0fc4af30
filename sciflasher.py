import argparse, yaml, logging, sys, traceback
from contextlib import ExitStack
from alive_progress import alive_bar
from bootloader_definitions import Bootloader, BOOTLOADER_NAMES, WORKER_FUNCTION_NAMES, FLASH_CHIP_TABLE, FLASH_MANUFACTURER_NAMES, is_jtec
from sciboot.chip import flash_chip_by_index, default_flash_chip, FlashChipIdentificationException
from sciboot.engine import Engine
from sciboot.image import load_flash_image, load_eeprom_image, describe_image, default_output_path, ImageSizeException
from sciboot.session import SessionConfig, Operation, Timing, Success, Aborted, Cancelled, UnsupportedOperationException
from sciboot.status import attach_console, attach_session_log, detach
from sciboot.transport import load_transport, TransportLoadException

DEFAULT_CONFIG = {
	'transport': 'virtual',
	'transport_options': {},
	'bootloader': 'SBEC3A_3APLUS_3B_256K',
	'flash_chip': 'auto',
	'backup_flash': True,
	'backup_eeprom': True,
	'output_directory': 'ROMs/PCM',
	'log_directory': 'LOG/SCI',
	'timing': {},
}

def load_config (config_filename):
	config = dict(DEFAULT_CONFIG)
	with open(config_filename) as file:
		loaded = yaml.safe_load(file) or {}
	config.update(loaded)
	config['transport_options'] = config['transport_options'] or {}
	config['timing'] = config['timing'] or {}
	return config

def load_arguments (argv=None):
	parser = argparse.ArgumentParser(prog='SCIFlasher')
	parser.add_argument('--bootstrap', action='store_true', help='Put the ECU into bootstrap mode')
	parser.add_argument('-r', '--read-flash', action='store_true')
	parser.add_argument('-f', '--write-flash', help='Flash image to write')
	parser.add_argument('--read-eeprom', action='store_true')
	parser.add_argument('--write-eeprom', help='EEPROM image to write')
	parser.add_argument('-o', '--output', help='Filename to save the flash/EEPROM dump')
	parser.add_argument('--bootloader', help='Bootloader name or number, see --list-bootloaders')
	parser.add_argument('--flash-chip', help='Flash chip index or "auto", see --list-flash-chips')
	parser.add_argument('--no-flash-backup', action='store_true')
	parser.add_argument('--no-eeprom-backup', action='store_true')
	parser.add_argument('--list-bootloaders', action='store_true')
	parser.add_argument('--list-flash-chips', action='store_true')
	parser.add_argument('-c', '--config', help='Config filename', default='sciflasher.yml')
	parser.add_argument('-v', '--verbose', action='count', default=0)
	args = parser.parse_args(argv)

	logging_levels = [logging.WARNING, logging.INFO, logging.DEBUG]
	logging.basicConfig(level=logging_levels[min(args.verbose, len(logging_levels) -1)])

	SCIFlasher_config = load_config(args.config)

	if (args.bootloader):
		SCIFlasher_config['bootloader'] = args.bootloader
	if (args.flash_chip):
		SCIFlasher_config['flash_chip'] = args.flash_chip
	if (args.no_flash_backup):
		SCIFlasher_config['backup_flash'] = False
	if (args.no_eeprom_backup):
		SCIFlasher_config['backup_eeprom'] = False

	return SCIFlasher_config, args

def parse_bootloader (value) -> Bootloader:
	if isinstance(value, int) or str(value).isdigit():
		return Bootloader(int(value))
	try:
		return Bootloader[str(value).upper()]
	except KeyError:
		raise ValueError('Unknown bootloader {}'.format(value))

def parse_flash_chip (value, bootloader: Bootloader):
	if value is None or str(value).lower() == 'auto' or int(value) == 0:
		return default_flash_chip(bootloader)
	return flash_chip_by_index(int(value))

def build_session_config (operation: Operation, SCIFlasher_config: dict, **kwargs) -> SessionConfig:
	bootloader = parse_bootloader(SCIFlasher_config['bootloader'])
	return SessionConfig(
		operation=operation,
		bootloader=bootloader,
		flash_chip=parse_flash_chip(SCIFlasher_config['flash_chip'], bootloader),
		backup_flash=SCIFlasher_config['backup_flash'],
		backup_eeprom=SCIFlasher_config['backup_eeprom'],
		timing=Timing(**SCIFlasher_config['timing']),
		**kwargs
	)

def cli_list_bootloaders ():
	print('[*] Available bootloaders:')
	for bootloader in Bootloader:
		print('    [{}] {} ({})'.format(bootloader.value, BOOTLOADER_NAMES[bootloader], bootloader.name))

def cli_list_flash_chips ():
	print('[*] Available flash chips:')
	print('    [0] autodetect')
	for chip in FLASH_CHIP_TABLE:
		chip_ids = ', '.join([hex(x) for x in chip['chip_ids']]) or 'select by hand'
		print('    [{}] {} {} ({} kB), ID: {} {}'.format(chip['index'], FLASH_MANUFACTURER_NAMES[chip['manufacturer']], chip['name'], chip['size_bytes'] // 1024, hex(chip['manufacturer'].value), chip_ids))

def confirm (question: str) -> bool:
	return input('[?] {} [y/n]: '.format(question)) == 'y'

class ProgressBars:
	''' One alive_bar per block transfer phase '''
	def __init__ (self):
		self.stack = ExitStack()
		self.worker = None
		self.bar = None
		self.cursor = 0

	def __call__ (self, worker, cursor, total):
		if worker != self.worker or cursor == 0:
			self.close()
			self.bar = self.stack.enter_context(alive_bar(total, unit='B', title=WORKER_FUNCTION_NAMES[worker]))
			self.worker = worker
			self.cursor = 0
		if cursor > self.cursor:
			self.bar(cursor - self.cursor)
			self.cursor = cursor

	def close (self):
		self.stack.close()
		self.stack = ExitStack()
		self.worker = None
		self.bar = None

def run_session (engine: Engine, session_config: SessionConfig, log_directory: str = None):
	log_handler = attach_session_log(log_directory) if log_directory else None
	try:
		engine.start(session_config)
		while True:
			try:
				outcome = engine.wait(0.2)
			except KeyboardInterrupt:
				print('\n[!] Cancelling..')
				engine.cancel()
				continue
			if outcome is not None or not engine.busy:
				return outcome
	finally:
		close_progress = getattr(engine.progress_callback, 'close', None)
		if close_progress:
			close_progress()
		if log_handler:
			detach(log_handler)

def report (outcome) -> bool:
	if isinstance(outcome, Success):
		print('[*] Done!')
		return True
	if isinstance(outcome, Cancelled):
		print('[!] Cancelled.')
	elif isinstance(outcome, Aborted):
		print('[!] Aborted: {}'.format(outcome.reason))
	if getattr(outcome, 'indeterminate', False):
		print('[!] The ECU has been partially reprogrammed. Flash a valid file before turning the key to RUN.')
	return False

def cli_report_dump (filename: str):
	with open(filename, 'rb') as file:
		print('[*] saved to {} ({})'.format(filename, describe_image(file.read())))

def cli_bootstrap (engine: Engine, SCIFlasher_config: dict):
	session_config = build_session_config(Operation.BOOTSTRAP, SCIFlasher_config)
	print('[*] Bootloader: {}'.format(BOOTLOADER_NAMES[session_config.bootloader]))
	return run_session(engine, session_config, SCIFlasher_config['log_directory'])

def cli_read_flash (engine: Engine, SCIFlasher_config: dict, output_filename: str = None):
	output_filename = output_filename or default_output_path(SCIFlasher_config['output_directory'], 'flash')
	session_config = build_session_config(Operation.READ_FLASH, SCIFlasher_config, flash_output=output_filename)
	outcome = run_session(engine, session_config, SCIFlasher_config['log_directory'])
	if isinstance(outcome, Success):
		cli_report_dump(output_filename)
	return outcome

def cli_read_eeprom (engine: Engine, SCIFlasher_config: dict, output_filename: str = None):
	output_filename = output_filename or default_output_path(SCIFlasher_config['output_directory'], 'eeprom')
	session_config = build_session_config(Operation.READ_EEPROM, SCIFlasher_config, eeprom_output=output_filename)
	outcome = run_session(engine, session_config, SCIFlasher_config['log_directory'])
	if isinstance(outcome, Success):
		cli_report_dump(output_filename)
	return outcome

def cli_write_flash (engine: Engine, SCIFlasher_config: dict, input_filename: str):
	print('\n[*] Loading up {}'.format(input_filename))
	bootloader = parse_bootloader(SCIFlasher_config['bootloader'])
	chip = parse_flash_chip(SCIFlasher_config['flash_chip'], bootloader)
	flash = load_flash_image(input_filename, chip)
	print('[*] Loaded {}'.format(describe_image(flash)))

	if not SCIFlasher_config['backup_flash']:
		if not confirm('Flash memory backup is disabled. Continue without a backup?'):
			print('[!] Aborting!')
			return None
	if not SCIFlasher_config['backup_eeprom'] and not is_jtec(bootloader):
		if not confirm('EEPROM backup is disabled. Continue without a backup?'):
			print('[!] Aborting!')
			return None
	if not confirm('Ready to flash! Do you wish to continue?'):
		print('[!] Aborting!')
		return None

	flash_output = default_output_path(SCIFlasher_config['output_directory'], 'flash')
	eeprom_output = default_output_path(SCIFlasher_config['output_directory'], 'eeprom')
	session_config = build_session_config(Operation.WRITE_FLASH, SCIFlasher_config, flash_image=flash, flash_output=flash_output, eeprom_output=eeprom_output)
	return run_session(engine, session_config, SCIFlasher_config['log_directory'])

def cli_write_eeprom (engine: Engine, SCIFlasher_config: dict, input_filename: str):
	print('\n[*] Loading up {}'.format(input_filename))
	eeprom = load_eeprom_image(input_filename)
	print('[*] Loaded {}'.format(describe_image(eeprom)))

	if not confirm('Ready to write EEPROM! Do you wish to continue?'):
		print('[!] Aborting!')
		return None

	session_config = build_session_config(Operation.WRITE_EEPROM, SCIFlasher_config, eeprom_image=eeprom)
	return run_session(engine, session_config, SCIFlasher_config['log_directory'])

def main (transport, SCIFlasher_config: dict, args):
	engine = Engine(transport, progress_callback=ProgressBars(), operator_callback=confirm)

	try:
		if (args.bootstrap):
			outcome = cli_bootstrap(engine, SCIFlasher_config)
		elif (args.read_flash):
			outcome = cli_read_flash(engine, SCIFlasher_config, args.output)
		elif (args.write_flash):
			outcome = cli_write_flash(engine, SCIFlasher_config, args.write_flash)
		elif (args.read_eeprom):
			outcome = cli_read_eeprom(engine, SCIFlasher_config, args.output)
		elif (args.write_eeprom):
			outcome = cli_write_eeprom(engine, SCIFlasher_config, args.write_eeprom)
		else:
			print('[!] Nothing to do. See --help')
			return None
	except (ImageSizeException, UnsupportedOperationException, FlashChipIdentificationException, ValueError) as e:
		print('[!] {}'.format(e))
		return None

	if outcome is not None:
		report(outcome)
	return outcome

if __name__ == '__main__':
	SCIFlasher_config, args = load_arguments()

	if (args.list_bootloaders):
		cli_list_bootloaders()
		sys.exit()

	if (args.list_flash_chips):
		cli_list_flash_chips()
		sys.exit()

	attach_console()

	print('[*] Selected transport: {}. Initializing..'.format(SCIFlasher_config['transport']))
	try:
		transport = load_transport(SCIFlasher_config['transport'], SCIFlasher_config['transport_options'])
	except TransportLoadException as e:
		print('[!] {}'.format(e))
		sys.exit(1)

	outcome = None
	try:
		transport.open()
		outcome = main(transport, SCIFlasher_config, args)
	except KeyboardInterrupt:
		pass
	except Exception:
		print('\n\n[!] Exception in main thread!')
		print(traceback.format_exc())
		print('\n[!] Shutting down due to an exception in the main thread. For exception details, see above')
	transport.close()
	sys.exit(0 if isinstance(outcome, Success) else 1)
