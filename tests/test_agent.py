from cadence.message import Message, MessageRole


def test_tool_registry_maps_names(make_agent, sample_tool):
    agent = make_agent(tools=[sample_tool])
    assert "greet" in agent.tool_registry
    assert agent.tool_registry.get("greet") is sample_tool


def test_build_request_offers_tools(make_agent, sample_tool):
    agent = make_agent(tools=[sample_tool])
    messages = [Message(role=MessageRole.USER, content="hi")]
    request = agent.build_request(messages, stream=True)

    assert request.model == "mock-model"
    assert request.messages == messages
    assert request.stream is True
    assert [t["function"]["name"] for t in request.tools] == ["greet"]
    assert request.tool_choice == "auto"


def test_build_request_without_tools(make_agent, sample_tool):
    agent = make_agent(tools=[sample_tool])
    request = agent.build_request([], stream=False, tools_enabled=False)

    assert request.tools is None
    assert request.tool_choice is None
    assert "tools" not in request.payload()


def test_agent_without_tools_sends_no_tool_choice(make_agent):
    request = make_agent().build_request([], stream=False)
    assert request.tools is None
    assert request.tool_choice is None


def test_repr_lists_tools(make_agent, sample_tool):
    agent = make_agent(name="helper", tools=[sample_tool])
    assert repr(agent) == "Agent(name='helper', model='mock-model', tools=['greet'])"
