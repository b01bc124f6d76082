#+
# Setuptools script to install BusObjects. Make sure setuptools
# <https://setuptools.pypa.io/en/latest/index.html> is installed.
# Invoke from the command line in this directory as follows:
#
#     python3 setup.py build
#     sudo python3 setup.py install
#
# Written by Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
#-

import sys
import setuptools
from setuptools.command.build_py import \
    build_py as std_build_py

class my_build_py(std_build_py) :
    "customization of build to perform additional validation."

    def run(self) :
        if sys.version_info < (3, 10) :
            sys.stderr.write("This module requires Python 3.10 or later.\n")
            sys.exit(-1)
        #end if
        super().run()
    #end run

#end my_build_py

setuptools.setup \
  (
    name = "BusObjects",
    version = "1.0",
    description = "server-side D-Bus object framework, for Python 3.10 or later",
    long_description =
        "exposes objects with methods, signals and properties over D-Bus, with"
        " automatic introspection, the standard Properties interface and the"
        " ObjectManager protocol",
    author = "BusObjects contributors",
    license = "LGPL v2.1+",
    python_requires = ">=3.10",
    py_modules = ["busvalues", "busobjects", "busloopback"],
    extras_require =
        {
            "test" : ["pytest"],
        },
    cmdclass =
        {
            "build_py" : my_build_py,
        },
  )
