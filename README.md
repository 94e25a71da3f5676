# ifexhub

Building blocks for systems whose service interfaces are described in IFEX
YAML and served over gRPC:

- **Discovery** (`ifexhub.registry`, `ifexhub.discovery_service`): a
  registry where services announce their endpoint, status and IFEX schema,
  send heartbeats, and can be looked up by name or queried with filters
  (name substring, method name, transport, availability, extension paths
  such as `x-scheduling.enabled=true`). It runs as a gRPC server and comes
  with a client.
- **Dynamic calls** (`ifexhub.caller`, `ifexhub.descriptors`,
  `ifexhub.model`): call any method described in an IFEX schema on a gRPC
  service, with JSON parameters. Protobuf messages for the method are built
  at run time and the reply comes back as JSON.
- **Dispatch** (`ifexhub.dispatcher`): look a service up in discovery, read
  its IFEX schema, check the parameters, then make the dynamic call.
- **Jobs** (`ifexhub.jobs`): the record of a scheduled method call, ISO 8601
  time handling in UTC, recurrence (`minutely`, `hourly`, `daily`,
  `weekly`), job filters and day, week and month calendar ranges.

## Installing

```
pip install ifexhub
```

## Running the discovery service

```
ifex-discovery-service --listen=0.0.0.0:50051
```

`--listen` defaults to `0.0.0.0:50051`; `--help` (or `-h`) prints the
options. When bound to a wildcard address the command logs the local
addresses it can be reached at. Stop it with Ctrl+C.

## Using the library

The registry works without a network:

```python
from ifexhub.registry import ServiceInfo, ServiceNotFound, ServiceRegistry

registry = ServiceRegistry()
registration_id = registry.register_service(
    ServiceInfo(name="climate", address="localhost:50060")
)
print(registry.get_service("climate").address)   # localhost:50060
registry.unregister_service(registration_id)
try:
    registry.get_service("climate")
except ServiceNotFound:
    print("nothing registered under that name")
```

If a service registers with an IFEX schema but no namespaces, the
namespaces and methods are read from the schema.

`DiscoveryServer` serves a registry over gRPC (`start`, `shutdown`, `wait`,
and it is a context manager); `DiscoveryClient` talks to it. The client's
`get_service` returns `None` for an unknown name, and `unregister_service`
and `send_heartbeat` raise `ServiceNotFound` for an unknown registration id.

```python
from ifexhub.discovery_service import DiscoveryClient
from ifexhub.dispatcher import Dispatcher

with DiscoveryClient("localhost:50051") as discovery:
    dispatcher = Dispatcher(discovery)
    result = dispatcher.call_method("climate", "set_temperature", '{"celsius": 21}')
    print(result.status, result.response, result.error_message)
```

`Dispatcher.call_method` returns a `CallResult` whose `status` is a
`DispatchStatus`: `SERVICE_UNAVAILABLE` when the service or its schema
cannot be found, `METHOD_NOT_FOUND` or `INVALID_PARAMETERS` when
validation fails, otherwise the outcome of the call. `DynamicCaller` can
also be used directly with a `CallRequest` and an explicit
`ServiceEndpoint`; it calls `/swdv.<service>.<method>_service/<method>`.

Job times are ISO 8601 in UTC:

```python
from ifexhub.jobs import ViewType, calendar_view_range, format_iso8601, parse_iso8601

moment = parse_iso8601("2024-05-15T10:00:00Z")
print(format_iso8601(moment))          # 2024-05-15T10:00:00Z
start, end = calendar_view_range(ViewType.WEEK, "2024-05-15T10:00:00Z")
```

Calendar ranges start at local midnight; weeks start on Monday.

## What is not included

- There is no command or gRPC server for the dispatcher. `Dispatcher` is a
  library class; its `register_with_discovery` announces an address but
  nothing in the package listens there.
- There is no scheduler service. `ifexhub.jobs` describes jobs and their
  timing, but nothing stores jobs, runs them when they are due, or serves
  them over the network.