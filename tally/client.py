import argparse
import code
import logging

import simplejson as json
import zmq

log = logging.getLogger(__name__)

default_bind = 'tcp://127.0.0.1:5555'


ctx = zmq.Context.instance()


class ServerError(Exception):
    """
    The server ran the call and it raised. The message is the server side
    ``'ExceptionName: message'``.
    """

    @property
    def error_name(self):
        return str(self).split(':', 1)[0]


class TimeoutError(Exception):
    pass


class Client(object):
    """
    Queries a running ``tally-server``. Besides ``call()``, any public
    attribute is a remote method on the server's aggregator::

        client.series('site-1', '/index.html', '2010-10-10', '2010-10-11')

    A REQ socket can't send again until it has its reply, so after a timeout
    the socket is thrown away and a fresh one is connected.
    """

    def __init__(self, connect=default_bind, wait=3000):
        self.connect = connect
        self.wait = wait
        self.sock = None
        self.reconnect()

    def reconnect(self):
        if self.sock is not None:
            self.poller.unregister(self.sock)
            self.sock.close()
        self.sock = ctx.socket(zmq.REQ)
        self.sock.setsockopt(zmq.LINGER, 0)
        self.sock.connect(self.connect)

        self.poller = zmq.Poller()
        self.poller.register(self.sock, zmq.POLLIN)

    def call(self, method, *args, **kwargs):
        """
        Call ``method`` on the server.

        :raises ServerError:
            If the call raised on the server.
        :raises TimeoutError:
            If no reply arrived within ``wait`` milliseconds.
        """
        self.sock.send_string(json.dumps([method, args, kwargs]))

        if not self.poller.poll(self.wait):
            log.warning('No reply to %s from %s', method, self.connect)
            self.reconnect()
            raise TimeoutError('Timed out after %d ms waiting for reply' %
                               self.wait)

        status, resp = json.loads(self.sock.recv_string())
        if status != 'ok':
            raise ServerError(resp)
        return resp

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)

        def rpc_method(*args, **kwargs):
            return self.call(name, *args, **kwargs)
        rpc_method.__name__ = name
        return rpc_method

    def close(self):
        self.sock.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def main():
    p = argparse.ArgumentParser(description='Run a Tally client.')
    p.add_argument('--connect', type=str,
                   default=default_bind,
                   help='ZeroMQ socket description to connect to')
    p.add_argument('--wait', type=int, default=3000,
                   help='Milliseconds to wait for each reply')
    args = p.parse_args()

    client = Client(args.connect, wait=args.wait)
    code.interact("The 'client' object is available for queries.",
                  local=dict(client=client))
