from setuptools import setup, find_packages


setup(name="tally",
      version='0.1',
      description='Pre-aggregated real-time hit counters',
      long_description='',
      classifiers=[
          'Development Status :: 4 - Beta',
          'Programming Language :: Python :: 3',
          'Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware',
          'Topic :: Internet :: WWW/HTTP :: Site Management',
      ],
      keywords='analytics counters time-series',
      license='MIT',
      packages=find_packages(),
      python_requires='>=3.8',
      install_requires=[
          'sqlalchemy>=2.0',
          'webob',
          'redis>=3.0',
          'pytz',
          'pyzmq',
          'simplejson',
      ],
      extras_require={
          'tests': ['pytest', 'webtest', 'fakeredis'],
      },
      entry_points=dict(
          console_scripts=[
              'tally-server=tally.server:main',
              'tally-client=tally.client:main',
              'tally-log-server=tally.log.remote:server',
          ]
      ),
      zip_safe=False)
