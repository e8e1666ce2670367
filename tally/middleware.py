import time

from webob import Request, Response

from .record import HitRecord
from .util import transparent_pixel, decode_url


class HitMiddleware(object):
    """
    WSGI middleware which writes a ``HitRecord`` to a log for every page
    served by the wrapped application.

    Sites are identified by request host through ``host_map``. If
    ``pixel_path`` is set, requests to it are answered with a transparent GIF
    and counted as a hit on the page named in its ``page`` query parameter,
    so static pages can be counted with a beacon image.
    """

    def __init__(self, app, log, host_map=None, default_site=None,
                 pixel_path=None, buffer_writes=True):
        self.app = app
        self.log = log
        self.host_map = host_map or {}
        self.default_site = default_site
        self.pixel_path = pixel_path
        self.buffer_writes = buffer_writes

    def timestamp(self):
        """
        Override this to generate event timestamps in a different way.
        Defaults to the POSIX epoch.
        """
        return '%0.4f' % time.time()

    def site_for(self, req):
        host = req.host.split(':', 1)[0]
        return self.host_map.get(host, self.default_site or host)

    def count_page(self, req, resp):
        return (req.method in ('GET', 'POST') and
                req.headers.get('X-Purpose') != 'preview' and
                resp.status_code < 400)

    def record_for(self, req, page):
        return HitRecord(timestamp=self.timestamp(),
                         site=self.site_for(req),
                         page=page)

    def handle_pixel(self, req):
        page = req.GET.get('page')
        if page:
            self.log.write(self.record_for(req, page).to_list())
        resp = Response(transparent_pixel)
        resp.content_type = 'image/gif'
        resp.cache_control = 'no-cache, no-store'
        return resp

    def __call__(self, environ, start_response):
        req = Request(environ)

        if self.pixel_path and req.path_info == self.pixel_path:
            resp = self.handle_pixel(req)
        else:
            resp = req.get_response(self.app)
            if self.count_page(req, resp):
                page = decode_url(req.path_info) or '/'
                rec = self.record_for(req, page)
                if self.buffer_writes:
                    # Write once the response body has been handed off.
                    resp.app_iter = self.write_after(resp.app_iter, rec)
                else:
                    self.log.write(rec.to_list())

        return resp(environ, start_response)

    def write_after(self, app_iter, rec):
        try:
            for chunk in app_iter:
                yield chunk
        finally:
            close = getattr(app_iter, 'close', None)
            if close:
                close()
            self.log.write(rec.to_list())
