"""
An in-process message transport for the BusObjects framework. It provides
the message, filter and connection primitives that busobjects builds on,
without any wire encoding: messages carry validated Python values. Inbound
traffic is injected with Connection.deliver or Connection.call, and
everything the server side sends is recorded in Connection.sent, which
makes it the natural peer for exercising an ObjectServer in tests or
inside a single process.
"""
#+
# Copyright 2017-2018 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import asyncio
import itertools
import logging
import busvalues
from busvalues import \
    DBUS, \
    DBusError

logger = logging.getLogger("busloopback")

class TransportError(DBusError) :
    "raised or reported when the connection cannot carry a message."

    def __init__(self, message) :
        super().__init__(DBUS.ERROR_DISCONNECTED, message)
    #end __init__

#end TransportError

class Message :
    "a D-Bus message. Do not instantiate directly; use the new_method_call," \
    " new_signal, new_method_return and new_error constructors."

    __slots__ = \
        (
            "type",
            "path",
            "interface",
            "member",
            "destination",
            "sender",
            "serial",
            "reply_serial",
            "error_name",
            "no_reply",
            "_types",
            "_body",
        ) # to forestall typos

    def __init__(self, type, *, path = None, interface = None, member = None, destination = None, error_name = None, reply_serial = None) :
        self.type = type
        self.path = path
        self.interface = interface
        self.member = member
        self.destination = destination
        self.sender = None
        self.serial = None
        self.reply_serial = reply_serial
        self.error_name = error_name
        self.no_reply = False
        self._types = []
        self._body = []
    #end __init__

    @classmethod
    def new_method_call(celf, destination, path, iface, method) :
        "creates a new message representing a method call."
        busvalues.validate_path(path)
        if iface != None :
            busvalues.validate_interface(iface)
        #end if
        busvalues.validate_member(method)
        return \
            celf \
              (
                DBUS.MESSAGE_TYPE_METHOD_CALL,
                path = DBUS.ObjectPath(path),
                interface = iface,
                member = method,
                destination = destination,
              )
    #end new_method_call

    @classmethod
    def new_signal(celf, path, iface, name) :
        "creates a new message representing a signal."
        busvalues.validate_path(path)
        busvalues.validate_interface(iface)
        busvalues.validate_member(name)
        return \
            celf \
              (
                DBUS.MESSAGE_TYPE_SIGNAL,
                path = DBUS.ObjectPath(path),
                interface = iface,
                member = name,
              )
    #end new_signal

    def new_method_return(self) :
        "creates a new message that is a reply to this message."
        if self.type != DBUS.MESSAGE_TYPE_METHOD_CALL :
            raise TypeError("can only reply to a method call")
        #end if
        return \
            type(self) \
              (
                DBUS.MESSAGE_TYPE_METHOD_RETURN,
                destination = self.sender,
                reply_serial = self.serial,
              )
    #end new_method_return

    def new_error(self, name, message) :
        "creates a new message that is an error reply to this message."
        if self.type != DBUS.MESSAGE_TYPE_METHOD_CALL :
            raise TypeError("can only reply to a method call")
        #end if
        busvalues.validate_error_name(name)
        result = type(self) \
          (
            DBUS.MESSAGE_TYPE_ERROR,
            destination = self.sender,
            error_name = name,
            reply_serial = self.serial,
          )
        if message != None :
            result.pack("s", message)
        #end if
        return \
            result
    #end new_error

    @property
    def signature(self) :
        return \
            busvalues.unparse_signature(self._types)
    #end signature

    @property
    def objects(self) :
        "a copy of the values in the message body."
        return \
            list(self._body)
    #end objects

    def pack(self, signature, *values) :
        "appends values to the message body, validating them against signature." \
        " Raises TypeError or ValueError if they do not conform; the message is" \
        " left unchanged in that case."
        types = busvalues.parse_signature(signature)
        validated = busvalues.validate_values(types, values)
        self._types.extend(types)
        self._body.extend(validated)
    #end pack

    def unpack(self, signature) :
        "returns the values in the message body, after checking that the body has" \
        " exactly the given signature. Raises TypeError if it does not."
        expected = busvalues.unparse_signature(busvalues.parse_signature(signature))
        if expected != self.signature :
            raise TypeError \
              (
                "message body has signature “%s”, expecting “%s”" % (self.signature, expected)
              )
        #end if
        return \
            list(self._body)
    #end unpack

    def is_method_call(self, iface, method) :
        return \
            (
                self.type == DBUS.MESSAGE_TYPE_METHOD_CALL
            and
                self.interface == iface
            and
                self.member == method
            )
    #end is_method_call

    def is_signal(self, iface, name) :
        return \
            (
                self.type == DBUS.MESSAGE_TYPE_SIGNAL
            and
                self.interface == iface
            and
                self.member == name
            )
    #end is_signal

    def __repr__(self) :
        return \
            (
                "<Message type=%d path=%s interface=%s member=%s serial=%s signature=%s>"
            %
                (self.type, self.path, self.interface, self.member, self.serial, repr(self.signature))
            )
    #end __repr__

#end Message

class Filter :
    "a subscription to inbound messages matching a predicate. Matching messages" \
    " queue up until collected with receive; each message is offered to every" \
    " filter on the connection."

    __slots__ = ("connection", "predicate", "_queue")

    def __init__(self, connection, predicate) :
        self.connection = connection
        self.predicate = predicate
        self._queue = asyncio.Queue()
        connection.add_filter(self)
    #end __init__

    def matches(self, message) :
        return \
            self.predicate(message)
    #end matches

    def enqueue(self, message) :
        self._queue.put_nowait(message)
    #end enqueue

    async def receive(self) :
        "waits for and returns the next matching message."
        return \
            await self._queue.get()
    #end receive

    @property
    def pending(self) :
        "the number of matching messages not yet received."
        return \
            self._queue.qsize()
    #end pending

    def close(self) :
        self.connection.remove_filter(self)
    #end close

#end Filter

class Connection :
    "an in-process connection. Messages sent by the local side are stamped with" \
    " serial numbers and appended to the sent list; messages delivered from the" \
    " peer are offered to the registered filters."

    __slots__ = \
        (
            "unique_name",
            "peer_name",
            "loop",
            "sent",
            "connected",
            "_filters",
            "_serials",
            "_pending",
            "_failures",
        ) # to forestall typos

    def __init__(self, *, unique_name = ":1.1", peer_name = ":1.2", loop = None) :
        self.unique_name = unique_name
        self.peer_name = peer_name
        self.loop = loop
        self.sent = []
        self.connected = True
        self._filters = []
        self._serials = itertools.count(1)
        self._pending = {}
        self._failures = 0
    #end __init__

    def _get_loop(self) :
        result = self.loop
        if result == None :
            try :
                result = asyncio.get_running_loop()
            except RuntimeError :
                result = None
            #end try
        #end if
        return \
            result
    #end _get_loop

    def _stamp(self, message, sender) :
        if message.serial == None :
            message.serial = next(self._serials)
        #end if
        if message.sender == None :
            message.sender = sender
        #end if
    #end _stamp

    def new_signal(self, path, iface, name) :
        return \
            Message.new_signal(path, iface, name)
    #end new_signal

    def new_filter(self, predicate) :
        "returns a new Filter that collects inbound messages matching predicate."
        return \
            Filter(self, predicate)
    #end new_filter

    def add_filter(self, filter) :
        self._filters.append(filter)
    #end add_filter

    def remove_filter(self, filter) :
        if filter in self._filters :
            self._filters.remove(filter)
        #end if
    #end remove_filter

    def fail_sends(self, count) :
        "makes the next count calls to async_send report failure to their" \
        " completion callbacks instead of sending."
        self._failures = count
    #end fail_sends

    def send(self, message) :
        "sends a message synchronously, returning its serial number."
        if not self.connected :
            raise TransportError("connection is closed")
        #end if
        self._stamp(message, self.unique_name)
        self.sent.append(message)
        if message.reply_serial != None and message.reply_serial in self._pending :
            reply_wait = self._pending.pop(message.reply_serial)
            if not reply_wait.done() :
                reply_wait.set_result(message)
            #end if
        #end if
        logger.debug("sent %s", message)
        return \
            message.serial
    #end send

    def async_send(self, message, completion = None) :
        "queues a message for sending. completion, if given, is later invoked with" \
        " None on success or a TransportError on failure."
        if self._failures > 0 or not self.connected :
            self._failures = max(self._failures - 1, 0)
            error = TransportError("cannot send %s" % repr(message))
        else :
            self.send(message)
            error = None
        #end if
        if completion != None :
            loop = self._get_loop()
            if loop != None :
                loop.call_soon(completion, error)
            else :
                completion(error)
            #end if
        #end if
    #end async_send

    def deliver(self, message) :
        "injects a message as though it had been received from the peer, offering" \
        " it to every filter whose predicate matches. Returns the number of filters" \
        " that accepted it."
        if not self.connected :
            raise TransportError("connection is closed")
        #end if
        self._stamp(message, self.peer_name)
        accepted = 0
        for filter in list(self._filters) :
            if filter.matches(message) :
                filter.enqueue(message)
                accepted += 1
            #end if
        #end for
        return \
            accepted
    #end deliver

    async def call(self, message, timeout = 1.0) :
        "delivers a method call from the peer and waits for the reply (method" \
        " return or error) that the local side sends back. Raises" \
        " asyncio.TimeoutError if none arrives within timeout seconds."
        loop = asyncio.get_running_loop()
        self._stamp(message, self.peer_name)
        reply_wait = loop.create_future()
        self._pending[message.serial] = reply_wait
        try :
            self.deliver(message)
            reply = await asyncio.wait_for(reply_wait, timeout)
        finally :
            self._pending.pop(message.serial, None)
        #end try
        return \
            reply
    #end call

    def signals(self, iface = None, name = None) :
        "returns the signals sent so far, optionally restricted to the given" \
        " interface and name."
        return \
            list \
              (
                m for m in self.sent
                if
                        m.type == DBUS.MESSAGE_TYPE_SIGNAL
                    and
                        (iface == None or m.interface == iface)
                    and
                        (name == None or m.member == name)
              )
    #end signals

    def close(self) :
        "disconnects; outstanding calls fail with TransportError."
        self.connected = False
        for reply_wait in self._pending.values() :
            if not reply_wait.done() :
                reply_wait.set_exception(TransportError("connection closed"))
            #end if
        #end for
        self._pending.clear()
    #end close

#end Connection
