"""
Line encoding shared by the file-backed logs. Each record is written as one
JSON array on a line of its own. Non-ASCII text is escaped, so a line is
always plain ASCII and never holds a raw newline.
"""

import simplejson as json


class LineLog(object):
    """
    Mixin providing ``format()`` and ``parse()`` for logs which store one
    record per line. Not a usable log by itself.
    """
    encoding = 'ascii'

    def format(self, elements):
        return json.dumps([str(el) for el in elements],
                          ensure_ascii=True,
                          separators=(',', ':')).encode(self.encoding)

    def parse(self, line):
        """
        Decode one line back into its list of string elements.

        :raises ValueError:
            If the line isn't a JSON array, e.g. it was cut short.
        """
        vals = json.loads(line.decode(self.encoding))
        if not isinstance(vals, list):
            raise ValueError('log line is not a record: %r' % line)
        return vals
