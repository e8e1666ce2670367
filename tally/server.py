import logging
import logging.config
import sys
import argparse
from datetime import date, datetime
from threading import Event, Thread

import simplejson as json
import zmq

import tally
from tally.aggregator import Aggregator
from tally.log.timerotating import TimeRotatingLog
from tally.stores import store_for_url
from tally.worker import Worker

log = logging.getLogger(__name__)


ctx = zmq.Context.instance()
default_bind = 'tcp://127.0.0.1:5555'


def encode(obj):
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    raise TypeError('%r is not JSON serializable' % (obj,))


class Server(Thread):
    """
    Answers queries against an aggregator over a ZeroMQ REP socket. Requests
    are JSON ``[method, args, kwargs]`` lists; replies are ``['ok', result]``
    or ``['error', 'ExceptionName: message']``.
    """
    exposed = ('series', 'total', 'bucket', 'stats', 'get_pointer',
               'record_hit')
    poll_timeout = 100

    def __init__(self, backend, bind=default_bind):
        Thread.__init__(self)
        self.daemon = True
        self.backend = backend
        self.bind = bind
        self.killed = Event()
        self.bound = Event()

    def run(self):
        s = ctx.socket(zmq.REP)
        s.setsockopt(zmq.LINGER, 0)
        s.bind(self.bind)
        self.bound.set()

        poller = zmq.Poller()
        poller.register(s, zmq.POLLIN)
        try:
            while not self.killed.is_set():
                if poller.poll(self.poll_timeout):
                    self.handle_zmq(s)
        finally:
            s.close()

    def kill(self):
        self.killed.set()

    def handle_zmq(self, sock):
        try:
            req = json.loads(sock.recv_string())
            resp = self.handle(req)
            msg = json.dumps(['ok', resp], default=encode)
        except Exception as e:
            log.warning('Request failed: %s: %s', e.__class__.__name__, e)
            msg = json.dumps(['error', '%s: %s' % (e.__class__.__name__,
                                                   str(e))])
        sock.send_string(msg)

    def handle(self, req):
        log.info('Handling request: %r', req)
        method, args, kwargs = req
        if method not in self.exposed:
            raise AttributeError('no such method: %r' % method)
        resp = getattr(self.backend, method)(*args, **kwargs)
        log.info('Returning response: %r', resp)
        return resp


def logging_config(verbose=False, filename=None):
    handlers = {
        'console': {
            'class': 'logging.StreamHandler',
            'stream': sys.stderr,
            'formatter': 'generic',
            'level': logging.DEBUG if verbose else logging.WARN,
        },
        'null': {
            'class': 'logging.NullHandler',
        }
    }

    if filename:
        handlers['root_file'] = {
            'class': 'logging.FileHandler',
            'formatter': 'generic',
            'level': 'NOTSET',
            'filename': filename,
        }

    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'generic': {
                'format':
                "%(asctime)s %(levelname)-5.5s [%(name)s] %(message)s"
            },
        },
        'handlers': handlers,
        'loggers': {
            'tally': {
                'propagate': True,
                'level': 'NOTSET',
                'handlers': list(handlers),
            },
        },
        'root': {
            'level': 'DEBUG',
            'handlers': ['null']
        }
    }


def load_args_config(args):
    return dict(verbose=args.verbose,
                error_log_path=args.error_log_path,
                store_url=args.url,
                input_log_path=args.input_log_path,
                expected_daily_volume=args.volume,
                bind=args.bind)


def load_python_config(namespace):
    mod_name, attr_name = namespace.rsplit('.', 1)
    __import__(mod_name)
    mod = sys.modules[mod_name]
    return dict(getattr(mod, attr_name))


def main(killed_event=None):
    p = argparse.ArgumentParser(
        description='Run a Tally worker with a TimeRotatingLog, and serve '
        'queries against its store.')

    p.add_argument('-v', '--verbose', dest='verbose', action='store_true',
                   default=False, help='Print detailed output')
    p.add_argument('-p', '--path', dest='input_log_path', type=str,
                   help='Input hit log path')
    p.add_argument('--log', dest='error_log_path', type=str,
                   help='Path to error/debug log')
    p.add_argument('-u', '--url', dest='url', type=str,
                   default='memory://',
                   help='Store URL: a SQLAlchemy URL, redis://, or memory://')
    p.add_argument('--volume', dest='volume', type=int,
                   help='Expected hits per page per day, for tuning bucket '
                   'pre-allocation')
    p.add_argument('--bind', type=str,
                   default=default_bind,
                   help='ZeroMQ socket description to bind to')

    p.add_argument('--config', type=str,
                   help='Python namespace to use for configuration')

    args = p.parse_args()

    if args.config:
        config = load_python_config(args.config)
    else:
        config = load_args_config(args)

    logging.config.dictConfig(logging_config(config.pop('verbose', False),
                                             config.pop('error_log_path',
                                                        None)))

    input_log_path = config.pop('input_log_path')
    bind = config.pop('bind', default_bind)
    store = store_for_url(config.pop('store_url', None))
    aggregator = Aggregator(store, **config)
    tally.server_backend = aggregator

    hitlog = TimeRotatingLog(input_log_path)
    worker = Worker(hitlog, aggregator, stats_every=5000)

    server = Server(aggregator, bind=bind)
    server.start()

    try:
        worker.run(stay_alive=True, killed_event=killed_event)
    finally:
        server.kill()
        aggregator.close()
