"""
Server-side object framework for D-Bus. An ObjectServer exposes a tree of
Objects over a bus connection; each Object carries Interfaces holding
methods, signals and properties. The framework implements the standard
org.freedesktop.DBus.Properties interface on every object, answers
Introspect calls with XML synthesized from the registered objects, and
answers GetManagedObjects while announcing InterfacesAdded and
InterfacesRemoved, as the org.freedesktop.DBus.ObjectManager protocol
describes.

The connection passed to the ObjectServer must provide send,
async_send, new_signal and new_filter, as busloopback.Connection does.
All registration and property updates are expected to happen on the
thread running the event loop; nothing here is locked.
"""
#+
# Copyright 2017-2018 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import enum
import asyncio
import logging
from xml.sax.saxutils import \
    quoteattr
import busvalues
from busvalues import \
    DBUS, \
    DBUSX, \
    Variant, \
    CallPlan, \
    Argument

logger = logging.getLogger("busobjects")

class ErrorReturn(Exception) :
    "Method handlers can raise this to report an error that will be returned" \
    " in a message back to the caller."

    def __init__(self, name, message) :
        self.args = (name, message)
    #end __init__

    @property
    def name(self) :
        return \
            self.args[0]
    #end name

    @property
    def message(self) :
        return \
            self.args[1]
    #end message

#end ErrorReturn

class UPDATE(enum.Enum) :
    "how Interface.set_properties treats the values it is given:\n" \
    "  * VALUE_CHANGE_ONLY -- store and announce only values that differ from those" \
    " already held (a value of a different type counts as different)\n" \
    "  * FORCE -- store and announce every value, and emit PropertiesChanged even" \
    " for an empty update."
    VALUE_CHANGE_ONLY = 1
    FORCE = 2
#end UPDATE

#+
# Bus handle
#-

class Connection :
    "the handle shared by an ObjectServer and all its Objects and Interfaces," \
    " wrapping the transport connection. Keeps strong references to the tasks" \
    " it creates, and retries failed asynchronous sends."

    __slots__ = \
        (
            "connection",
            "loop",
            "send_retries",
            "retry_delay",
            "_tasks",
        ) # to forestall typos

    def __init__(self, connection, *, send_retries = 2, retry_delay = 0.1, loop = None) :
        if send_retries < 0 :
            raise ValueError("send_retries cannot be negative")
        #end if
        self.connection = connection
        self.loop = loop
        self.send_retries = send_retries
        self.retry_delay = retry_delay
        self._tasks = set()
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

    def create_task(self, coro) :
        "runs coro as a task on the event loop, keeping a reference to it until" \
        " it completes."
        loop = self._get_loop()
        if loop == None :
            raise RuntimeError("no event loop to run %s" % repr(coro))
        #end if
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return \
            task
    #end create_task

    def send(self, message) :
        "sends a message synchronously."
        return \
            self.connection.send(message)
    #end send

    def send_async(self, message) :
        "queues a message for sending. A failed send is logged and retried up to" \
        " send_retries times with a delay growing linearly from retry_delay; after" \
        " that the message is dropped."
        attempt = 0

        def completion(error) :
            nonlocal attempt
            if error != None :
                if attempt < self.send_retries :
                    attempt += 1
                    logger.warning \
                      (
                        "sending %s failed (%s), retry %d of %d",
                        message, error, attempt, self.send_retries
                      )
                    loop = self._get_loop()
                    if loop != None :
                        loop.call_later \
                          (
                            self.retry_delay * attempt,
                            self.connection.async_send, message, completion
                          )
                    else :
                        self.connection.async_send(message, completion)
                    #end if
                else :
                    logger.error("giving up sending %s: %s", message, error)
                #end if
            #end if
        #end completion

    #begin send_async
        self.connection.async_send(message, completion)
    #end send_async

    def send_signal(self, *, path, interface, name, signature, args, sync = False) :
        "constructs and sends a signal message with the given contents."
        message = self.connection.new_signal(path, interface, name)
        message.pack(signature, *args)
        if sync :
            self.send(message)
        else :
            self.send_async(message)
        #end if
    #end send_signal

    def reply_error(self, message, name, text) :
        "sends an error reply to a method call, unless the caller wants no reply."
        if not getattr(message, "no_reply", False) :
            self.send_async(message.new_error(name, text))
        #end if
    #end reply_error

#end Connection

#+
# Members
#-

class Method :
    "a method exposed on an interface: binds a handler to a name, and marshals" \
    " the arguments and results of calls to it according to a CallPlan derived" \
    " from the handler. The handler may be a coroutine function."

    __slots__ = ("name", "bus", "handler", "plan")

    def __init__(self, name, bus, handler, *, in_signature = None, out_signature = None) :
        busvalues.validate_member(name)
        self.name = name
        self.bus = bus
        self.handler = handler
        self.plan = CallPlan.from_handler(handler, in_signature, out_signature)
    #end __init__

    def get_args(self) :
        return \
            self.plan.get_args()
    #end get_args

    def _reply(self, message, result) :
        if not getattr(message, "no_reply", False) :
            reply = message.new_method_return()
            self.plan.pack_result(reply, result)
            self.bus.send_async(reply)
        #end if
    #end _reply

    async def _await_result(self, message, coro) :
        try :
            self._reply(message, await coro)
        except ErrorReturn as err :
            self.bus.reply_error(message, err.name, err.message)
        except Exception as err :
            logger.exception("method %s failed", self.name)
            self.bus.reply_error(message, DBUS.ERROR_FAILED, str(err))
        #end try
    #end _await_result

    def call(self, message) :
        "invokes the handler on the arguments of message, and sends back the reply." \
        " Errors in the handler propagate to the caller, except ErrorReturn which" \
        " is turned into an error reply."
        try :
            try :
                args = self.plan.unpack_args(message)
            except (TypeError, ValueError) as err :
                raise ErrorReturn(DBUS.ERROR_INVALID_ARGS, str(err))
            #end try
            result = self.handler(*args)
            if asyncio.iscoroutine(result) :
                self.bus.create_task(self._await_result(message, result))
            else :
                self._reply(message, result)
            #end if
        except ErrorReturn as err :
            self.bus.reply_error(message, err.name, err.message)
        #end try
    #end call

#end Method

class Signal :
    "a signal declared on an interface, with the signature of its arguments."

    __slots__ = ("name", "types")

    def __init__(self, name, signature = "") :
        busvalues.validate_member(name)
        self.name = name
        self.types = tuple(busvalues.parse_signature(signature))
    #end __init__

    @property
    def signature(self) :
        return \
            busvalues.unparse_signature(self.types)
    #end signature

    def get_args(self) :
        return \
            list \
              (
                Argument(direction = None, name = "arg_%d" % i, type = t.signature)
                for i, t in enumerate(self.types)
              )
    #end get_args

#end Signal

class PropertyStore :
    "the properties of an interface: a mapping from name to Variant that keeps" \
    " insertion order, and knows which values an update actually changes."

    __slots__ = ("_props",)

    def __init__(self) :
        self._props = {}
    #end __init__

    def update(self, updates, mode = UPDATE.VALUE_CHANGE_ONLY) :
        "applies updates, a dict or sequence of (name, value) pairs; plain values" \
        " are converted with Variant.of. Returns the list of (name, Variant) pairs" \
        " that were stored. Nothing is stored if any value cannot be converted."
        if not isinstance(mode, UPDATE) :
            raise TypeError("mode must be an UPDATE value")
        #end if
        if isinstance(updates, dict) :
            updates = updates.items()
        #end if
        converted = []
        for name, value in updates :
            if not isinstance(name, str) :
                raise TypeError("property name must be a string, not %s" % repr(name))
            #end if
            converted.append((name, Variant.of(value)))
        #end for
        changed = []
        for name, value in converted :
            if mode == UPDATE.FORCE or self._props.get(name) != value :
                self._props[name] = value
                changed.append((name, value))
            #end if
        #end for
        return \
            changed
    #end update

    def snapshot(self) :
        "returns a copy of the current name-to-Variant mapping."
        return \
            dict(self._props)
    #end snapshot

    def get(self, name, default = None) :
        return \
            self._props.get(name, default)
    #end get

    def __getitem__(self, name) :
        return \
            self._props[name]
    #end __getitem__

    def __contains__(self, name) :
        return \
            name in self._props
    #end __contains__

    def __iter__(self) :
        return \
            iter(list(self._props))
    #end __iter__

    def __len__(self) :
        return \
            len(self._props)
    #end __len__

#end PropertyStore

def _add_member(table, kind, owner, member, replace) :
    # common handling of registering a method or signal.
    if member.name in table :
        if not replace :
            raise KeyError("%s “%s” already registered on interface “%s”" % (kind, member.name, owner))
        #end if
        logger.warning("replacing %s “%s” on interface “%s”", kind, member.name, owner)
    #end if
    table[member.name] = member
#end _add_member

class Interface :
    "a named D-Bus interface, holding methods, signals and properties. Create it" \
    " with Object.add_interface, or create it directly and pass it to" \
    " Object.register_interface. Until it is attached to an object, property" \
    " updates are stored but not announced."

    __slots__ = ("name", "bus", "object_path", "methods", "signals", "properties")

    def __init__(self, name, bus) :
        busvalues.validate_interface(name)
        self.name = name
        self.bus = bus
        self.object_path = None
        self.methods = {}
        self.signals = {}
        self.properties = PropertyStore()
    #end __init__

    def get_properties_map(self) :
        "returns a snapshot of the properties as a dict of name to Variant."
        return \
            self.properties.snapshot()
    #end get_properties_map

    def register_method(self, name, handler, *, in_signature = None, out_signature = None, replace = True) :
        "registers handler as the implementation of the named method. The argument" \
        " and result types come from the handler annotations unless given as" \
        " explicit signatures. A later registration under the same name replaces" \
        " the earlier one, unless replace is False, when KeyError is raised."
        method = Method \
          (
            name,
            self.bus,
            handler,
            in_signature = in_signature,
            out_signature = out_signature
          )
        _add_member(self.methods, "method", self.name, method, replace)
        return \
            method
    #end register_method

    def method(self, name = None, **kwargs) :
        "decorator form of register_method, defaulting the method name to the" \
        " function name."

        def decorate(func) :
            self.register_method((name, func.__name__)[name == None], func, **kwargs)
            return \
                func
        #end decorate

    #begin method
        return \
            decorate
    #end method

    def register_signal(self, name, signature = "", *, replace = True) :
        signal = Signal(name, signature)
        _add_member(self.signals, "signal", self.name, signal, replace)
        return \
            signal
    #end register_signal

    def set_property(self, name, value, mode = UPDATE.VALUE_CHANGE_ONLY) :
        return \
            self.set_properties([(name, value)], mode)
    #end set_property

    def set_properties(self, updates, mode = UPDATE.VALUE_CHANGE_ONLY) :
        "stores property values, and announces what was stored with a" \
        " PropertiesChanged signal if the interface is attached to an object." \
        " Returns the list of (name, Variant) pairs stored."
        changed = self.properties.update(updates, mode)
        if (len(changed) != 0 or mode == UPDATE.FORCE) and self.object_path != None :
            self.bus.send_signal \
              (
                path = self.object_path,
                interface = DBUS.INTERFACE_PROPERTIES,
                name = "PropertiesChanged",
                signature = "sa{sv}as",
                args = (self.name, changed, [])
              )
        #end if
        return \
            changed
    #end set_properties

    def send_signal(self, name, *args) :
        "emits a signal previously declared with register_signal."
        signal = self.signals[name]
        if self.object_path == None :
            raise RuntimeError("interface “%s” is not attached to an object" % self.name)
        #end if
        self.bus.send_signal \
          (
            path = self.object_path,
            interface = self.name,
            name = name,
            signature = signal.types,
            args = args
          )
    #end send_signal

    def call(self, message) :
        "dispatches a method call to the matching method. Returns False if there" \
        " is no such method."
        method = self.methods.get(message.member)
        if method != None :
            method.call(message)
        #end if
        return \
            method != None
    #end call

#end Interface

class Object :
    "an object at a path, holding interfaces. Every object implements the" \
    " org.freedesktop.DBus.Properties interface on behalf of its other interfaces."

    __slots__ = ("path", "bus", "interfaces", "properties_iface")

    def __init__(self, bus, path) :
        busvalues.validate_path(path)
        self.path = DBUS.ObjectPath(path)
        self.bus = bus
        self.interfaces = {}
        self.properties_iface = None
        properties_iface = Interface(DBUS.INTERFACE_PROPERTIES, bus)
        self._define_properties_methods(properties_iface)
        self.register_interface(properties_iface)
        self.properties_iface = properties_iface
    #end __init__

    def _find_interface(self, interface_name) :
        interface = self.interfaces.get(interface_name)
        if interface == None :
            raise ErrorReturn \
              (
                DBUS.ERROR_UNKNOWN_INTERFACE,
                "no interface “%s” on object “%s”" % (interface_name, self.path)
              )
        #end if
        return \
            interface
    #end _find_interface

    def _define_properties_methods(self, properties_iface) :

        def get_prop(interface_name : str, property_name : str) -> Variant :
            props = self._find_interface(interface_name).properties
            if property_name not in props :
                raise ErrorReturn \
                  (
                    DBUS.ERROR_UNKNOWN_PROPERTY,
                    "no property “%s” on interface “%s”" % (property_name, interface_name)
                  )
            #end if
            return \
                props[property_name]
        #end get_prop

        def get_all_props(interface_name : str) -> dict[str, Variant] :
            return \
                self._find_interface(interface_name).get_properties_map()
        #end get_all_props

        def set_prop(interface_name : str, property_name : str, value : Variant) -> None :
            self._find_interface(interface_name).set_property(property_name, value)
        #end set_prop

    #begin _define_properties_methods
        properties_iface.register_method("Get", get_prop)
        properties_iface.register_method("GetAll", get_all_props)
        properties_iface.register_method("Set", set_prop)
        properties_iface.register_signal("PropertiesChanged", "sa{sv}as")
    #end _define_properties_methods

    def add_interface(self, name, *, replace = True) :
        "creates a new Interface with the given name, registers it on this object" \
        " and returns it."
        if not replace and name in self.interfaces :
            raise KeyError("interface “%s” already registered on “%s”" % (name, self.path))
        #end if
        interface = Interface(name, self.bus)
        self.register_interface(interface, replace = replace)
        return \
            interface
    #end add_interface

    def register_interface(self, interface, *, replace = True) :
        "attaches interface to this object and announces it with InterfacesAdded," \
        " carrying a snapshot of its current properties."
        name = interface.name
        if name == DBUS.INTERFACE_PROPERTIES and self.properties_iface != None :
            raise ValueError("the %s interface is provided by the object itself" % name)
        #end if
        if name in self.interfaces :
            if not replace :
                raise KeyError("interface “%s” already registered on “%s”" % (name, self.path))
            #end if
            logger.warning("replacing interface “%s” on “%s”", name, self.path)
            self.interfaces[name].object_path = None
        #end if
        self.interfaces[name] = interface
        interface.object_path = self.path
        self.bus.send_signal \
          (
            path = self.path,
            interface = DBUSX.INTERFACE_OBJECT_MANAGER,
            name = "InterfacesAdded",
            signature = "oa{sa{sv}}",
            args = (self.path, {name : interface.get_properties_map()}),
            sync = True
          )
        return \
            interface
    #end register_interface

    def remove_interface(self, name) :
        "detaches the named interface and announces it with InterfacesRemoved."
        if name == DBUS.INTERFACE_PROPERTIES :
            raise ValueError("the %s interface cannot be removed" % name)
        #end if
        interface = self.interfaces.pop(name)
        interface.object_path = None
        self.bus.send_signal \
          (
            path = self.path,
            interface = DBUSX.INTERFACE_OBJECT_MANAGER,
            name = "InterfacesRemoved",
            signature = "oas",
            args = (self.path, [name]),
            sync = True
          )
        return \
            interface
    #end remove_interface

    def get_interfaces(self) :
        return \
            dict(self.interfaces)
    #end get_interfaces

    def get_interface(self, name) :
        return \
            self.interfaces.get(name)
    #end get_interface

    def detach(self) :
        "detaches all interfaces from this object's path, so that they stop" \
        " announcing property changes and cannot send signals. Used when the" \
        " object leaves the server."
        for interface in self.interfaces.values() :
            interface.object_path = None
        #end for
    #end detach

    def call(self, message) :
        "dispatches a method call to the named interface. A call that names no" \
        " interface goes to the first interface with a method of that name." \
        " Returns False if nothing handled it."
        if message.interface != None :
            interface = self.interfaces.get(message.interface)
            handled = interface != None and interface.call(message)
        else :
            handled = False
            for interface in self.interfaces.values() :
                if message.member in interface.methods :
                    handled = interface.call(message)
                    break
                #end if
            #end for
        #end if
        return \
            handled
    #end call

#end Object

#+
# Introspection
#-

_PEER_XML = \
    (
        "  <interface name=\"%s\">\n"
        "    <method name=\"Ping\"/>\n"
        "    <method name=\"GetMachineId\">\n"
        "      <arg name=\"machine_uuid\" type=\"s\" direction=\"out\"/>\n"
        "    </method>\n"
        "  </interface>\n"
    %
        DBUS.INTERFACE_PEER
    )
_INTROSPECTABLE_XML = \
    (
        "  <interface name=\"%s\">\n"
        "    <method name=\"Introspect\">\n"
        "      <arg name=\"xml_data\" type=\"s\" direction=\"out\"/>\n"
        "    </method>\n"
        "  </interface>\n"
    %
        DBUS.INTERFACE_INTROSPECTABLE
    )
_OBJECT_MANAGER_XML = \
    (
        "  <interface name=\"%s\">\n"
        "    <method name=\"GetManagedObjects\">\n"
        "      <arg name=\"object_paths_interfaces_and_properties\" type=\"a{oa{sa{sv}}}\" direction=\"out\"/>\n"
        "    </method>\n"
        "    <signal name=\"InterfacesAdded\">\n"
        "      <arg name=\"object_path\" type=\"o\"/>\n"
        "      <arg name=\"interfaces_and_properties\" type=\"a{sa{sv}}\"/>\n"
        "    </signal>\n"
        "    <signal name=\"InterfacesRemoved\">\n"
        "      <arg name=\"object_path\" type=\"o\"/>\n"
        "      <arg name=\"interfaces\" type=\"as\"/>\n"
        "    </signal>\n"
        "  </interface>\n"
    %
        DBUSX.INTERFACE_OBJECT_MANAGER
    )

def _member_xml(tag, name, args) :
    if len(args) == 0 :
        result = ["    <%s name=%s/>\n" % (tag, quoteattr(name))]
    else :
        result = ["    <%s name=%s>\n" % (tag, quoteattr(name))]
        for arg in args :
            result.append \
              (
                    "      <arg name=%s type=%s%s/>\n"
                %
                    (
                        quoteattr(arg.name),
                        quoteattr(arg.type),
                        ("", " direction=%s" % quoteattr(arg.direction or ""))[arg.direction != None],
                    )
              )
        #end for
        result.append("    </%s>\n" % tag)
    #end if
    return \
        result
#end _member_xml

def _interface_xml(interface) :
    result = ["  <interface name=%s>\n" % quoteattr(interface.name)]
    for name, method in interface.methods.items() :
        result.extend(_member_xml("method", name, method.get_args()))
    #end for
    for name, signal in interface.signals.items() :
        result.extend(_member_xml("signal", name, signal.get_args()))
    #end for
    for name, value in interface.get_properties_map().items() :
        result.append \
          (
                "    <property name=%s type=%s access=\"readwrite\"/>\n"
            %
                (quoteattr(name), quoteattr(value.signature))
          )
    #end for
    result.append("  </interface>\n")
    return \
        result
#end _interface_xml

def introspect(path, objects) :
    "returns the introspection XML for path: the interfaces of the object registered" \
    " exactly at path, if any, followed by one node element for each distinct" \
    " immediate child path segment among the other objects, in sorted order."
    prefix = (path, "")[path == "/"] + "/"
    out = [DBUS.INTROSPECT_1_0_XML_DOCTYPE_DECL_NODE, "<node>\n"]
    children = set()
    for obj in objects :
        if obj.path == path :
            out.extend((_PEER_XML, _INTROSPECTABLE_XML, _OBJECT_MANAGER_XML))
            for interface in obj.interfaces.values() :
                out.extend(_interface_xml(interface))
            #end for
        elif obj.path.startswith(prefix) :
            children.add(obj.path[len(prefix):].split("/", 1)[0])
        #end if
    #end for
    for child in sorted(children) :
        out.append("  <node name=%s/>\n" % quoteattr(child))
    #end for
    out.append("</node>\n")
    return \
        "".join(out)
#end introspect

def managed_objects(objects) :
    "returns the GetManagedObjects result for objects: a dict mapping each object" \
    " path to a dict mapping each of its interface names to a properties snapshot."
    return \
        dict \
          (
            (obj.path, dict((name, iface.get_properties_map()) for name, iface in obj.interfaces.items()))
            for obj in objects
          )
#end managed_objects

#+
# Server
#-

def _is_introspect(message) :
    return \
        message.is_method_call(DBUS.INTERFACE_INTROSPECTABLE, "Introspect")
#end _is_introspect

def _is_get_managed_objects(message) :
    return \
        message.is_method_call(DBUSX.INTERFACE_OBJECT_MANAGER, "GetManagedObjects")
#end _is_get_managed_objects

def _is_other_method_call(message) :
    return \
        (
            message.type == DBUS.MESSAGE_TYPE_METHOD_CALL
        and
            not _is_introspect(message)
        and
            not _is_get_managed_objects(message)
        )
#end _is_other_method_call

class ObjectServer :
    "the registry of Objects on a connection. Once attached to an event loop it" \
    " serves Introspect, GetManagedObjects and all other method calls to the" \
    " registered objects, each from its own persistent task.\n" \
    "\n" \
    "Calls to unknown objects, interfaces or methods are dropped unless" \
    " report_unknown is True, in which case the matching D-Bus error is" \
    " returned. send_retries and retry_delay govern the retrying of failed" \
    " sends. With replace False, registering a duplicate object path raises" \
    " KeyError instead of replacing the earlier object."

    __slots__ = \
        (
            "connection",
            "bus",
            "report_unknown",
            "replace",
            "_objects",
            "_filters",
            "_tasks",
        ) # to forestall typos

    def __init__(self, connection, *, report_unknown = False, send_retries = 2, retry_delay = 0.1, replace = True, loop = None) :
        self.connection = connection
        self.bus = Connection \
          (
            connection,
            send_retries = send_retries,
            retry_delay = retry_delay,
            loop = loop
          )
        self.report_unknown = report_unknown
        self.replace = replace
        self._objects = {}
        self._tasks = []
        # filters exist from the start so that calls arriving before
        # attach_asyncio are queued, not lost
        self._filters = self._new_filters()
    #end __init__

    def _new_filters(self) :
        return \
            [
                (self.connection.new_filter(_is_introspect), self._on_introspect),
                (self.connection.new_filter(_is_get_managed_objects), self._on_get_managed_objects),
                (self.connection.new_filter(_is_other_method_call), self._on_method_call),
            ]
    #end _new_filters

    def add_object(self, path) :
        "creates a new Object at path, registers it and returns it."
        if path in self._objects :
            if not self.replace :
                raise KeyError("an object is already registered at “%s”" % path)
            #end if
            # retire the old object before the new one announces itself
            logger.warning("replacing object at “%s”", path)
            self._retire(self._objects.pop(path))
        #end if
        obj = Object(self.bus, path)
        self.register_object(obj)
        return \
            obj
    #end add_object

    def register_object(self, obj) :
        "registers obj at its path. An object already registered there is" \
        " replaced, and its interfaces are withdrawn, unless replace is False."
        old = self._objects.get(obj.path)
        if old != None and old is not obj :
            if not self.replace :
                raise KeyError("an object is already registered at “%s”" % obj.path)
            #end if
            logger.warning("replacing object at “%s”", obj.path)
            self._retire(old)
        #end if
        self._objects[obj.path] = obj
        return \
            obj
    #end register_object

    def _retire(self, obj) :
        # detaches all interfaces of an object leaving the registry, and
        # announces their removal.
        names = list(obj.interfaces)
        obj.detach()
        self.bus.send_signal \
          (
            path = obj.path,
            interface = DBUSX.INTERFACE_OBJECT_MANAGER,
            name = "InterfacesRemoved",
            signature = "oas",
            args = (obj.path, names),
            sync = True
          )
    #end _retire

    def remove_object(self, path) :
        "unregisters the object at path, announcing the removal of its interfaces." \
        " Its interfaces no longer announce property changes."
        obj = self._objects.pop(path)
        self._retire(obj)
        return \
            obj
    #end remove_object

    def get_object(self, path) :
        return \
            self._objects.get(path)
    #end get_object

    @property
    def objects(self) :
        "the registered objects, in registration order."
        return \
            list(self._objects.values())
    #end objects

    def get_xml_for_path(self, path) :
        return \
            introspect(path, self._objects.values())
    #end get_xml_for_path

    def get_managed_objects(self) :
        return \
            managed_objects(self._objects.values())
    #end get_managed_objects

    def _on_introspect(self, message) :
        reply = message.new_method_return()
        reply.pack("s", self.get_xml_for_path(message.path))
        self.bus.send_async(reply)
    #end _on_introspect

    def _on_get_managed_objects(self, message) :
        reply = message.new_method_return()
        reply.pack("a{oa{sa{sv}}}", self.get_managed_objects())
        self.bus.send_async(reply)
    #end _on_get_managed_objects

    def _unknown(self, message, name, text) :
        logger.debug("dropping call %s: %s", message, text)
        if self.report_unknown :
            self.bus.reply_error(message, name, text)
        #end if
    #end _unknown

    def _on_method_call(self, message) :
        obj = self._objects.get(message.path)
        if obj == None :
            self._unknown(message, DBUS.ERROR_UNKNOWN_OBJECT, "no object at path “%s”" % message.path)
        elif not obj.call(message) :
            if message.interface != None and message.interface not in obj.interfaces :
                self._unknown \
                  (
                    message,
                    DBUS.ERROR_UNKNOWN_INTERFACE,
                    "no interface “%s” on object “%s”" % (message.interface, message.path)
                  )
            else :
                self._unknown \
                  (
                    message,
                    DBUS.ERROR_UNKNOWN_METHOD,
                    "no method “%s” on object “%s”" % (message.member, message.path)
                  )
            #end if
        #end if
    #end _on_method_call

    async def _serve(self, filter, handle) :
        # each pass handles one message; a failure in a handler is reported
        # to the caller and does not stop the loop.
        while True :
            message = await filter.receive()
            try :
                handle(message)
            except Exception as err :
                logger.exception("error handling %s", message)
                self.bus.reply_error(message, DBUS.ERROR_FAILED, str(err))
            #end try
        #end while
    #end _serve

    @property
    def attached(self) :
        return \
            len(self._tasks) != 0
    #end attached

    def attach_asyncio(self, loop = None) :
        "starts serving on loop, or on the running loop if none is given."
        if self.attached :
            raise asyncio.InvalidStateError("server is already attached to an event loop")
        #end if
        if loop == None :
            loop = asyncio.get_running_loop()
        #end if
        self.bus.loop = loop
        if len(self._filters) == 0 :
            # closed earlier: subscribe afresh
            self._filters = self._new_filters()
        #end if
        for filter, handle in self._filters :
            self._tasks.append(loop.create_task(self._serve(filter, handle)))
        #end for
        return \
            self
    #end attach_asyncio

    def close(self) :
        "stops serving and detaches from the connection. Returns the cancelled" \
        " tasks, which the caller may await. Calls arriving while closed are not" \
        " queued; a later attach_asyncio subscribes again."
        for task in self._tasks :
            task.cancel()
        #end for
        for filter, _ in self._filters :
            filter.close()
        #end for
        self._filters = []
        tasks = self._tasks
        self._tasks = []
        return \
            tasks
    #end close

    async def __aenter__(self) :
        return \
            self.attach_asyncio()
    #end __aenter__

    async def __aexit__(self, exc_type, exc_value, traceback) :
        await asyncio.gather(*self.close(), return_exceptions = True)
    #end __aexit__

#end ObjectServer
