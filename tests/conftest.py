"""
Fixtures shared by the BusObjects tests: an in-process connection, an
ObjectServer on it, and a helper for building inbound method calls.
"""

import pytest
import busloopback
import busobjects

@pytest.fixture
def transport() :
    return \
        busloopback.Connection()
#end transport

@pytest.fixture
def server(transport) :
    return \
        busobjects.ObjectServer(transport, retry_delay = 0)
#end server

@pytest.fixture
def make_call() :

    def make_call(path, iface, method, signature = None, *args) :
        message = busloopback.Message.new_method_call("com.example.Service", path, iface, method)
        if signature != None :
            message.pack(signature, *args)
        #end if
        return \
            message
    #end make_call

#begin make_call
    return \
        make_call
#end make_call
