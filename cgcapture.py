#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# Puts matching ancestor processes (e.g. sapstart under some login shell)
#  into a new transient systemd scope under configured slice,
#  same as "systemd-run --scope" would have, but after the fact.

####################

conf = '/etc/cgcapture.yaml'
proc_root = '/proc'

MAX_PIDS = 16
COMM_LEN = 17 # kernel comm is shorter, parentheses already stripped
UNIT_NAME_LEN = 128
CG_LIMIT_MAX = 2**64 - 1

####################


import os, sys, uuid, logging
from collections import namedtuple, OrderedDict
from contextlib import contextmanager
from os.path import join

import yaml
from jeepney import DBusAddress, new_method_call
from jeepney.auth import AuthenticationError
from jeepney.io.blocking import open_dbus_connection
from jeepney.wrappers import DBusErrorResponse, unwrap_msg


log = logging.getLogger('cgcapture')

systemd = DBusAddress( '/org/freedesktop/systemd1',
	bus_name='org.freedesktop.systemd1', interface='org.freedesktop.systemd1.Manager' )


class CaptureError(Exception): pass
class ConfigError(CaptureError): pass
class AncestryError(CaptureError): pass
class ScopeNameError(CaptureError): pass
class BusError(CaptureError): pass

class ScopeError(CaptureError):
	def __init__(self, unit, name, reason):
		self.unit, self.name, self.reason = unit, name, reason
		super(ScopeError, self).__init__(
			'StartTransientUnit rejected for {} [{}]: {}'.format(unit, name, reason) )


Config = namedtuple('Config', 'parent_commands slice')
ProcStat = namedtuple('ProcStat', 'pid ppid comm')
Ancestry = namedtuple('Ancestry', 'pids capped')


def load_conf(path):
	try:
		with open(path) as src: data = yaml.safe_load(src.read().replace('\t', '  '))
	except (OSError, IOError, yaml.YAMLError) as err:
		raise ConfigError('Failed to load config {}: {}'.format(path, err))
	if not isinstance(data, dict):
		raise ConfigError('Config must be a mapping: {}'.format(path))
	try: cmds, cg_slice = data['parent_commands'], data['slice']
	except KeyError as err: raise ConfigError('Missing {} key in config: {}'.format(err, path))
	if isinstance(cmds, str): cmds = cmds.split()
	if not isinstance(cmds, list) or not cg_slice or not isinstance(cg_slice, str):
		raise ConfigError( 'parent_commands must be a list'
			' and slice a non-empty string: {}'.format(path) )
	cmds = tuple(OrderedDict.fromkeys(map(str, cmds)))
	for cmd in cmds:
		# Compared against truncated comm, so these can never match
		if len(cmd) > COMM_LEN:
			log.warning( 'parent_commands entry longer than'
				' {} chars will never match: {!r}'.format(COMM_LEN, cmd) )
	return Config(cmds, cg_slice)


def strip_comm(comm):
	'Strips parentheses from stat comm field, if any, and truncates it.'
	if ')' in comm: comm = comm[1:comm.rindex(')')]
	return comm.replace('\0', '')[:COMM_LEN]

def parse_stat(line):
	# comm can contain spaces and parens, so everything up to the last ")" is it
	if ')' in line:
		head, tail = line.rsplit(')', 1)
		pid, comm = head.split(None, 1)
		comm, fields = comm + ')', tail.split()
	else: pid, comm, *fields = line.split()
	return ProcStat(int(pid), int(fields[1]), strip_comm(comm))

def read_stat(pid):
	path = join(proc_root, str(pid), 'stat')
	try:
		with open(path, 'rb') as src: line = src.read().decode('utf-8', 'replace')
		return parse_stat(line)
	except (OSError, IOError, ValueError, IndexError) as err:
		raise AncestryError('Process lookup failed for pid {} ({}): {}'.format(pid, path, err))


def collect_pids(ppid, parent_commands):
	'''Walks up from ppid to init, returning Ancestry of pids
		with comm in parent_commands, closest one first.'''
	pids, pid = list(), ppid
	while pid > 1 and len(pids) < MAX_PIDS:
		st = read_stat(pid)
		log.debug('Ancestor pid {}: {!r} (ppid: {})'.format(pid, st.comm, st.ppid))
		if st.comm in parent_commands: pids.append(pid)
		pid = st.ppid
	capped = len(pids) == MAX_PIDS and pid > 1
	if capped:
		log.info('Incomplete forking hierarchy search after {} PIDs found'.format(MAX_PIDS))
	return Ancestry(tuple(pids), capped)


def make_scope_name():
	# -r stands for random, 128 bits should be enough to avoid collisions
	try: rnd = uuid.uuid4()
	except (OSError, NotImplementedError) as err:
		raise ScopeNameError('Randomness source unavailable: {}'.format(err))
	name = 'wmp-r{}.scope'.format(rnd.hex)
	assert len(name) < UNIT_NAME_LEN, name
	return name


class PropertyList:
	'''Builder for a(sv) property list of StartTransientUnit call.
		Array values are filled in "with props.array(name, sig) as items:" block,
		and nothing can be added or built while such block is open.'''

	def __init__(self):
		self._props, self._open = list(), None

	def _check_closed(self):
		if self._open is not None:
			raise RuntimeError('Property array still open: {}'.format(self._open))

	def append(self, name, sig, value):
		self._check_closed()
		self._props.append((name, (sig, value)))
		return self

	@contextmanager
	def array(self, name, sig):
		self._check_closed()
		self._open, items = name, list()
		try: yield items
		finally: self._open = None
		self._props.append((name, ('a{}'.format(sig), items)))

	def build(self):
		self._check_closed()
		return list(self._props)


def scope_message(unit, cg_slice, pids):
	props = PropertyList()
	# Scope is for resource control only, processes must be stopped by other means
	props.append('KillMode', 's', 'none')
	props.append('Slice', 's', cg_slice)
	# Parent slice controls actual limit
	props.append('MemoryLow', 't', CG_LIMIT_MAX)
	with props.array('PIDs', 'u') as items: items.extend(pids)
	return new_method_call( systemd, 'StartTransientUnit',
		'ssa(sv)a(sa(sv))', (unit, 'fail', props.build(), list()) )

def start_scope(unit, cg_slice, pids):
	'Returns job path for created scope, without waiting for it to finish.'
	msg = scope_message(unit, cg_slice, pids)
	try: bus = open_dbus_connection(bus='SYSTEM')
	except (OSError, AuthenticationError) as err:
		raise BusError('Failed opening system DBus: {}'.format(err))
	with bus:
		try: reply = bus.send_and_get_reply(msg)
		except OSError as err: raise BusError('DBus call error: {}'.format(err))
		try: job, = unwrap_msg(reply)
		except DBusErrorResponse as err:
			reason = ' '.join(map(str, err.data)) if err.data else ''
			raise ScopeError(unit, err.name, reason)
	log.debug('Scope {} start job: {}'.format(unit, job))
	return job


def main(args=None):
	import argparse
	parser = argparse.ArgumentParser(
		description='Put chosen ancestor processes into a new transient'
			' systemd scope under configured slice (similar to systemd-run --scope).')
	parser.add_argument('-a', '--ancestors', action='store_true',
		help='Put chosen ancestor processes under new scope.')
	parser.add_argument('-c', '--conf', default=conf, help='Configuration file (default: %(default)s).')
	parser.add_argument('--debug', action='store_true', help='Verbose operation mode.')
	opts = parser.parse_args(sys.argv[1:] if args is None else args)
	if not opts.ancestors: parser.error('No action specified.')

	logging.basicConfig(level=logging.DEBUG if opts.debug else logging.INFO)

	try:
		cfg = load_conf(opts.conf)
		found = collect_pids(os.getppid(), cfg.parent_commands)
		if not found.pids: return 0
		unit = make_scope_name()
		log.info('Found PIDs: {}'.format(', '.join(map(str, found.pids))))
		start_scope(unit, cfg.slice, found.pids)
	except CaptureError as err:
		log.error('Failed capture: {}'.format(err))
		return 1
	log.info('Successful capture into {}/{}'.format(cfg.slice, unit))
	return 0

if __name__ == '__main__': sys.exit(main())
