import logging
from datetime import datetime
from sciboot import status

def record (level, message, **extra):
	record = logging.LogRecord('sciboot.status', level, __file__, 1, message, None, None)
	record.__dict__.update(extra)
	return record

def test_status_formatter_prefixes ():
	formatter = status.StatusFormatter('%(message)s')
	assert formatter.format(record(logging.INFO, 'Start EEPROM reading.')) == '[*] Start EEPROM reading.'
	assert formatter.format(record(logging.WARNING, 'Current task is cancelled.')) == '[!] Current task is cancelled.'
	assert formatter.format(record(logging.ERROR, 'Flash erase error 0x82.')) == '[!] Flash erase error 0x82.'
	assert formatter.format(record(logging.DEBUG, 'Worker function uploaded.')) == 'Worker function uploaded.'
	assert formatter.format(record(logging.INFO, '', suppress_format=True)) == ''

def test_callback_log_handler ():
	lines = []
	handler = status.set_callback_log_handler(lines.append)
	try:
		status.logger.info('Flash erased successfully.')
		status.logger.debug('not shown')
		status.blank_line()
	finally:
		status.detach(handler)
	assert lines == ['[*] Flash erased successfully.', '']

def test_session_log_filename ():
	now = datetime(2024, 1, 2, 3, 4, 5)
	assert status.session_log_filename('LOG', now).endswith('scibootstraplog_20240102_030405.txt')

def test_session_log (tmp_path):
	now = datetime(2024, 1, 2, 3, 4, 5)
	handler = status.attach_session_log(str(tmp_path / 'LOG'), now)
	try:
		status.logger.debug('EEPROM block read. offset: 00 00. Size: 02 00.')
		status.logger.warning('Current task is cancelled.')
	finally:
		status.detach(handler)

	contents = (tmp_path / 'LOG' / 'scibootstraplog_20240102_030405.txt').read_text(encoding='utf-8')
	assert 'EEPROM block read. offset: 00 00. Size: 02 00.' in contents
	assert '[!] Current task is cancelled.' in contents
	assert handler not in status.logger.handlers
