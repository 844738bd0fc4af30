import os, logging
from datetime import datetime

# everything the operator should read goes through this logger
logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

PREFIXES = {
	logging.INFO: '[*] ',
	logging.WARNING: '[!] ',
	logging.ERROR: '[!] ',
}

class StatusFormatter (logging.Formatter):
	'''
	Prefixes INFO with [*] and WARNING/ERROR with [!].
	Records logged with extra={'suppress_format': True} are left alone (blank lines, banners)
	'''
	def formatMessage (self, record):
		# record.message is rebuilt by every handler's format(), so the prefix lands once per line
		if not getattr(record, 'suppress_format', False):
			record.message = PREFIXES.get(record.levelno, '') + record.message
		return super().formatMessage(record)

class CallbackLogHandler (logging.Handler):
	''' Log handler for directing status lines to a GUI or any other callable '''
	def __init__ (self, callback):
		super().__init__()
		self.callback = callback

	def emit (self, record):
		try:
			self.callback(self.format(record))
		except Exception:
			self.handleError(record)

def set_callback_log_handler (callback, level=logging.INFO) -> CallbackLogHandler:
	handler = CallbackLogHandler(callback)
	handler.setLevel(level)
	handler.setFormatter(StatusFormatter('%(message)s'))
	logger.addHandler(handler)
	return handler

def attach_console (level=logging.INFO) -> logging.Handler:
	console_handler = logging.StreamHandler()
	console_handler.setLevel(level)
	console_handler.setFormatter(StatusFormatter('%(message)s'))
	logger.addHandler(console_handler)
	# the console handler prints these already
	logger.propagate = False
	return console_handler

def session_log_filename (directory: str, now: datetime = None) -> str:
	now = now or datetime.now()
	return os.path.join(directory, 'scibootstraplog_{}.txt'.format(now.strftime('%Y%m%d_%H%M%S')))

def attach_session_log (directory: str, now: datetime = None) -> logging.FileHandler:
	os.makedirs(directory, exist_ok=True)
	file_handler = logging.FileHandler(session_log_filename(directory, now), encoding='utf-8')
	file_handler.setLevel(logging.DEBUG)
	file_handler.setFormatter(StatusFormatter('%(asctime)s %(message)s'))
	logger.addHandler(file_handler)
	return file_handler

def detach (handler: logging.Handler):
	logger.removeHandler(handler)
	handler.close()

def blank_line ():
	logger.info('', extra={'suppress_format': True})
